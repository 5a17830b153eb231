"""Usage accounting per provider, user and hour."""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from llm_relay.usage.storage import PersistentUsageStore

logger = logging.getLogger(__name__)


def hour_bucket(moment: Optional[datetime] = None) -> datetime:
    moment = moment or datetime.now(tz=timezone.utc)
    return moment.replace(minute=0, second=0, microsecond=0)


@dataclass
class ModelUsage:
    requests: int = 0
    tokens: int = 0
    cost: float = 0.0


@dataclass
class ProviderUsageStats:
    provider_id: str
    user_id: str
    timestamp: datetime
    tokens_used: int = 0
    cost: float = 0.0
    request_count: int = 0
    error_count: int = 0
    total_latency_ms: float = 0.0
    models: Dict[str, ModelUsage] = field(default_factory=dict)

    @property
    def average_latency_ms(self) -> float:
        calls = self.request_count + self.error_count
        return round(self.total_latency_ms / calls, 2) if calls else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "tokens_used": self.tokens_used,
            "cost": self.cost,
            "request_count": self.request_count,
            "error_count": self.error_count,
            "total_latency_ms": self.total_latency_ms,
            "average_latency_ms": self.average_latency_ms,
            "models": {
                name: {"requests": m.requests, "tokens": m.tokens, "cost": m.cost}
                for name, m in self.models.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderUsageStats":
        timestamp = datetime.fromisoformat(data["timestamp"])
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return cls(
            provider_id=data["provider_id"],
            user_id=data["user_id"],
            timestamp=timestamp,
            tokens_used=int(data.get("tokens_used", 0)),
            cost=float(data.get("cost", 0.0)),
            request_count=int(data.get("request_count", 0)),
            error_count=int(data.get("error_count", 0)),
            total_latency_ms=float(data.get("total_latency_ms", 0.0)),
            models={
                name: ModelUsage(m.get("requests", 0), m.get("tokens", 0), m.get("cost", 0.0))
                for name, m in (data.get("models") or {}).items()
            },
        )


class UsageTracker:
    """
    In-memory usage counters with optional JSON persistence.

    Counters are updated synchronously under a lock. Buckets older than
    `retention_hours` are dropped whenever a new hour bucket opens.
    Persistence either runs inline (`async_persist=False`) or through a
    single background writer; writes requested while it is busy collapse into
    one more write. `drain` waits for the writer.
    """

    def __init__(
        self,
        store: Optional[PersistentUsageStore] = None,
        async_persist: bool = True,
        retention_hours: int = 168,
    ):
        self._lock = threading.Lock()
        self._io_lock = threading.Lock()
        self.store = store
        self.async_persist = async_persist
        self.retention = timedelta(hours=retention_hours)
        self._stats: Dict[Tuple[str, str, str], ProviderUsageStats] = {}
        self._writer: Optional[asyncio.Task] = None
        self._dirty = False
        if store is not None:
            self._load()

    def _load(self) -> None:
        loaded = 0
        for raw in self.store.load():
            try:
                stats = ProviderUsageStats.from_dict(raw)
            except (KeyError, ValueError, TypeError) as e:
                logger.warning("Skipping malformed usage record: %s", e)
                continue
            self._stats[(stats.provider_id, stats.user_id, stats.timestamp.isoformat())] = stats
            loaded += 1
        self._prune(hour_bucket())
        if loaded:
            logger.info("Restored %d usage buckets from %s", loaded, self.store.storage_path)

    def _bucket(self, provider_id: str, user_id: str) -> ProviderUsageStats:
        ts = hour_bucket()
        key = (provider_id, user_id, ts.isoformat())
        stats = self._stats.get(key)
        if stats is None:
            self._prune(ts)
            stats = ProviderUsageStats(provider_id=provider_id, user_id=user_id, timestamp=ts)
            self._stats[key] = stats
        return stats

    def _prune(self, now: datetime) -> None:
        cutoff = now - self.retention
        expired = [key for key, stats in self._stats.items() if stats.timestamp < cutoff]
        for key in expired:
            del self._stats[key]
        if expired:
            logger.debug("Dropped %d usage buckets older than %s", len(expired), cutoff.isoformat())

    def record_success(
        self,
        provider_id: str,
        user_id: str,
        tokens: int,
        cost: float,
        latency_ms: float = 0.0,
        model: Optional[str] = None,
    ) -> ProviderUsageStats:
        """Record a completed call and its cost."""
        with self._lock:
            stats = self._bucket(provider_id, user_id)
            stats.request_count += 1
            stats.tokens_used += tokens
            stats.cost += cost
            stats.total_latency_ms += latency_ms
            model_usage = stats.models.setdefault(model or "default", ModelUsage())
            model_usage.requests += 1
            model_usage.tokens += tokens
            model_usage.cost += cost
        logger.debug("Recorded usage: provider=%s user=%s tokens=%d cost=%.6f", provider_id, user_id, tokens, cost)
        return stats

    def record_error(self, provider_id: str, user_id: str, latency_ms: float = 0.0) -> ProviderUsageStats:
        with self._lock:
            stats = self._bucket(provider_id, user_id)
            stats.error_count += 1
            stats.total_latency_ms += latency_ms
        return stats

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [stats.to_dict() for stats in self._stats.values()]

    def flush(self) -> None:
        """Write the current counters to the store (blocking)."""
        if self.store is None:
            return
        with self._io_lock:
            self.store.save(self.snapshot())

    async def persist(self) -> None:
        """Persist after a routed request, inline or in the background."""
        if self.store is None:
            return
        if not self.async_persist:
            self.flush()
            return
        self._dirty = True
        if self._writer is None or self._writer.done():
            self._writer = asyncio.get_running_loop().create_task(self._write_loop())

    async def _write_loop(self) -> None:
        while self._dirty:
            self._dirty = False
            try:
                await asyncio.to_thread(self.flush)
            except Exception:
                logger.exception("Background usage write failed")

    async def drain(self) -> None:
        """Wait for background writes to finish."""
        if self._writer is not None and not self._writer.done():
            await self._writer

    @property
    def pending_writes(self) -> int:
        return int(self._writer is not None and not self._writer.done())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_stats(self, provider_id: Optional[str] = None, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Usage buckets, newest first."""
        with self._lock:
            selected = [
                s for s in self._stats.values()
                if (provider_id is None or s.provider_id == provider_id)
                and (user_id is None or s.user_id == user_id)
            ]
            selected.sort(key=lambda s: s.timestamp, reverse=True)
            return [s.to_dict() for s in selected]

    def get_dashboard(self) -> Dict[str, Any]:
        """Totals per provider plus overall totals."""
        providers: Dict[str, Dict[str, Any]] = {}
        with self._lock:
            for s in self._stats.values():
                entry = providers.setdefault(
                    s.provider_id,
                    {"requests": 0, "errors": 0, "tokens": 0, "cost": 0.0, "total_latency_ms": 0.0},
                )
                entry["requests"] += s.request_count
                entry["errors"] += s.error_count
                entry["tokens"] += s.tokens_used
                entry["cost"] += s.cost
                entry["total_latency_ms"] += s.total_latency_ms

        for entry in providers.values():
            calls = entry["requests"] + entry["errors"]
            entry["average_latency_ms"] = round(entry.pop("total_latency_ms") / calls, 2) if calls else 0.0
            entry["cost"] = round(entry["cost"], 8)

        return {
            "providers": providers,
            "totals": {
                "requests": sum(e["requests"] for e in providers.values()),
                "errors": sum(e["errors"] for e in providers.values()),
                "tokens": sum(e["tokens"] for e in providers.values()),
                "cost": round(sum(e["cost"] for e in providers.values()), 8),
            },
            "timestamp": datetime.now(tz=timezone.utc).isoformat(),
        }
