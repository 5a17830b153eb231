from llm_relay.api.app import app

__all__ = ["app"]
