"""File-backed snapshot of an escrow engine's stores.

The engine saves inside its own critical section, just before any token
transfer or at commit when no tokens move, so the file never lags a payout.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

from .storage import atomic_write_json, ensure_private_dir, exclusive_lock, payguard_home


STATE_FILENAME = "escrow_state.json"
STATE_SCHEMA_VERSION = 1


class EscrowStateFile:
    """JSON state file with lock-based concurrency control."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path or payguard_home() / STATE_FILENAME
        ensure_private_dir(self.path.parent)
        self._lock_path = self.path.parent / f".{self.path.name}.lock"

    def load(self) -> Optional[dict[str, Any]]:
        with exclusive_lock(self._lock_path):
            if not self.path.exists():
                return None
            with open(self.path, encoding="utf-8") as f:
                raw = json.load(f)
        version = raw.get("schema_version")
        if version != STATE_SCHEMA_VERSION:
            raise ValueError(f"Unsupported escrow state schema version: {version}")
        return raw["state"]

    def save(self, state: dict[str, Any]) -> None:
        with exclusive_lock(self._lock_path):
            atomic_write_json(self.path, {"schema_version": STATE_SCHEMA_VERSION, "state": state})
