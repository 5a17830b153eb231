from llm_relay.usage.storage import PersistentUsageStore
from llm_relay.usage.tracker import ProviderUsageStats, UsageTracker

__all__ = ["PersistentUsageStore", "ProviderUsageStats", "UsageTracker"]
