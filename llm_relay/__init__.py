"""LLM Relay: route prompts across LLM providers with retry, fallback and accounting."""

from llm_relay.routing.models import RouterError, RoutingRequest, RoutingResponse
from llm_relay.routing.router import LLMRouter

__version__ = "1.0.0"

__all__ = ["LLMRouter", "RouterError", "RoutingRequest", "RoutingResponse", "__version__"]
