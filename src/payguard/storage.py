"""Local file helpers: private permissions, exclusive locks, atomic JSON writes."""

from __future__ import annotations

import fcntl
import json
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator


def payguard_home() -> Path:
    """Root directory for local PayGuard files (``PAYGUARD_HOME`` overrides)."""
    override = os.getenv("PAYGUARD_HOME")
    return Path(override) if override else Path.home() / ".payguard"


def payguard_secrets_dir() -> Path:
    """Directory for local secrets, kept outside the tree the secrets protect."""
    return Path.home() / ".payguard-secrets"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


@contextmanager
def exclusive_lock(lock_path: Path) -> Iterator[None]:
    """Hold an flock on ``lock_path`` for the duration of the block."""
    ensure_private_file(lock_path)
    with open(lock_path, "r+") as lockf:
        fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write JSON to a temp file, fsync, then rename over ``path``."""
    tmp_path = path.with_suffix(path.suffix + f".tmp.{os.getpid()}")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
    ensure_private_file(path)
