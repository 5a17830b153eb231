"""Persistent storage for provider usage statistics."""

import json
import logging
import os
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

STORE_VERSION = 1


class PersistentUsageStore:
    def __init__(self, storage_path: str = "~/.llm_relay/usage.json"):
        self.storage_path = os.path.expanduser(storage_path)
        self._ensure_directory()

    def _ensure_directory(self):
        directory = os.path.dirname(self.storage_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def load(self) -> List[Dict[str, Any]]:
        """Load usage buckets from disk."""
        if not os.path.exists(self.storage_path):
            return []

        try:
            with open(self.storage_path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to load usage data: %s", e)
            return []

        if not isinstance(data, dict):
            logger.error("Ignoring usage data: expected an object, got %s", type(data).__name__)
            return []

        if data.get("version") != STORE_VERSION:
            logger.info("Ignoring usage data with version %s", data.get("version"))
            return []
        stats = data.get("stats", [])
        if not isinstance(stats, list):
            logger.error("Ignoring usage data: stats is not a list")
            return []
        return [s for s in stats if isinstance(s, dict)]

    def save(self, stats: List[Dict[str, Any]]) -> None:
        """Write usage buckets atomically."""
        tmp_path = f"{self.storage_path}.tmp"
        try:
            with open(tmp_path, "w") as f:
                json.dump({"version": STORE_VERSION, "stats": stats}, f, indent=2)
            os.replace(tmp_path, self.storage_path)
        except OSError as e:
            logger.error("Failed to save usage data: %s", e)
