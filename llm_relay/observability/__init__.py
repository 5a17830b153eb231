from llm_relay.observability.event_log import RoutingEventLog

__all__ = ["RoutingEventLog"]
