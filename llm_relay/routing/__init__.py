"""Prompt routing: models, classification, selection and the router."""

from llm_relay.routing.classifier import ClassificationRule, PromptClassifier
from llm_relay.routing.models import (
    LLMPreferences,
    Priority,
    PromptAnalysis,
    RequestState,
    RouterError,
    RouterErrorCode,
    RoutingRequest,
    RoutingResponse,
    Scope,
)
from llm_relay.routing.policy import SelectionPolicy
from llm_relay.routing.router import LLMRouter

__all__ = [
    "ClassificationRule",
    "LLMPreferences",
    "LLMRouter",
    "Priority",
    "PromptAnalysis",
    "PromptClassifier",
    "RequestState",
    "RouterError",
    "RouterErrorCode",
    "RoutingRequest",
    "RoutingResponse",
    "Scope",
    "SelectionPolicy",
]
