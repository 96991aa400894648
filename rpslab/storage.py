from __future__ import annotations

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

import numpy as np
import redis

from .errors import MalformedStateError
from .mixer import HedgeMixer
from .records import StoredPredictorModelState, utc_now

logger = logging.getLogger(__name__)


class NumpyEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.generic):
            return obj.item()
        return json.JSONEncoder.default(self, obj)


class Repository(ABC):
    """Minimal key-value surface the engine persists through."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        pass


class MemoryRepository(Repository):
    def __init__(self):
        self.data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def remove(self, key: str) -> None:
        self.data.pop(key, None)


class FileRepository(Repository):
    """One JSON file per key under ``state_dir``."""

    def __init__(self, state_dir: str):
        self.state_dir = state_dir
        os.makedirs(self.state_dir, exist_ok=True)

    def _path(self, key: str) -> str:
        safe = "".join(c if c.isalnum() or c in ("-", "_", ".") else "_" for c in key)
        return os.path.join(self.state_dir, f"{safe}.json")

    def get(self, key: str) -> Optional[str]:
        p = self._path(key)
        if not os.path.exists(p):
            return None
        with open(p, "r", encoding="utf-8") as f:
            return f.read()

    def set(self, key: str, value: str) -> None:
        p = self._path(key)
        tmp = p + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(value)
        os.replace(tmp, p)

    def remove(self, key: str) -> None:
        p = self._path(key)
        if os.path.exists(p):
            os.remove(p)


class RedisRepository(Repository):
    def __init__(self, url: Optional[str] = None, client=None):
        self._redis = client if client is not None else redis.from_url(url, decode_responses=True)

    def get(self, key: str) -> Optional[str]:
        return self._redis.get(key)

    def set(self, key: str, value: str) -> None:
        self._redis.set(key, value)

    def remove(self, key: str) -> None:
        self._redis.delete(key)


def get_repository(storage: str, state_dir: str = "./rps_state", redis_url: Optional[str] = None) -> Repository:
    """Factory for the configured backend; an unreachable Redis falls back to files."""
    if storage == "redis" and redis_url:
        try:
            client = redis.from_url(redis_url, decode_responses=True)
            client.ping()
            return RedisRepository(client=client)
        except redis.RedisError as exc:
            logger.warning("redis unavailable at %s, using file storage: %s", redis_url, exc)
            return FileRepository(state_dir)
    if storage == "file":
        return FileRepository(state_dir)
    return MemoryRepository()


def fresh_model_state(profile_id: str, eta: float = 0.4, model_version: int = 1) -> StoredPredictorModelState:
    return StoredPredictorModelState(
        profile_id=profile_id,
        model_version=model_version,
        updated_at=utc_now(),
        rounds_seen=0,
        state=HedgeMixer(eta=eta).to_dict(),
    )


_MISSING = object()


class ModelStore:
    """Per-profile StoredPredictorModelState with a debounced write buffer.

    ``save`` only stages a serialized snapshot; ``flush`` writes everything
    staged and is a no-op when nothing is. ``flush_if_due`` flushes once the
    oldest staged record has waited ``debounce_s`` seconds.

    Safe to share between request threads and a background flusher: the
    buffer is guarded by a lock, and flushes are serialized so an older
    snapshot never overwrites a newer one.
    """

    def __init__(
        self,
        repository: Repository,
        debounce_s: float = 0.25,
        default_eta: float = 0.4,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repository = repository
        self.debounce_s = float(debounce_s)
        self.default_eta = float(default_eta)
        self.clock = clock
        self._buffer: Dict[str, Optional[str]] = {}  # None = pending removal
        self._inflight: Dict[str, Optional[str]] = {}
        self._dirty_since: Optional[float] = None
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()

    @staticmethod
    def key(profile_id: str) -> str:
        return f"rps:model:{profile_id}"

    @property
    def dirty(self) -> bool:
        with self._lock:
            return bool(self._buffer)

    def _staged(self, key: str):
        with self._lock:
            if key in self._buffer:
                return self._buffer[key]
            return self._inflight.get(key, _MISSING)

    def _read(self, key: str) -> Optional[str]:
        raw = self._staged(key)
        if raw is not _MISSING:
            return raw
        try:
            return self.repository.get(key)
        except (OSError, redis.RedisError) as exc:
            logger.warning("failed to read %s: %s", key, exc)
            return None

    def load(self, profile_id: str) -> StoredPredictorModelState:
        """Return the stored record, or a fresh one if missing or malformed."""
        raw = self._read(self.key(profile_id))
        if raw is None:
            return fresh_model_state(profile_id, self.default_eta)
        try:
            record = StoredPredictorModelState.from_dict(json.loads(raw))
        except (ValueError, MalformedStateError) as exc:
            logger.warning("discarding malformed model state for %s: %s", profile_id, exc)
            return fresh_model_state(profile_id, self.default_eta)
        if record.profile_id != profile_id:
            logger.warning("model state under %s belongs to %s; reinitializing", profile_id, record.profile_id)
            return fresh_model_state(profile_id, self.default_eta)
        return record

    def exists(self, profile_id: str) -> bool:
        """Whether a record is staged or stored; an unreadable backend counts as no."""
        return self._read(self.key(profile_id)) is not None

    def save(self, record: StoredPredictorModelState) -> None:
        self._stage(self.key(record.profile_id), json.dumps(record.to_dict(), cls=NumpyEncoder))

    def remove(self, profile_id: str) -> None:
        self._stage(self.key(profile_id), None)

    def _stage(self, key: str, value: Optional[str]) -> None:
        with self._lock:
            self._buffer[key] = value
            if self._dirty_since is None:
                self._dirty_since = self.clock()

    def flush_if_due(self) -> bool:
        with self._lock:
            due = self._dirty_since is not None and self.clock() - self._dirty_since >= self.debounce_s
        if not due:
            return False
        return self.flush()

    def flush(self) -> bool:
        """Write all staged records. Returns True if anything was written."""
        with self._flush_lock:
            with self._lock:
                if not self._buffer:
                    return False
                pending = self._buffer
                self._buffer = {}
                self._inflight = pending
                self._dirty_since = None
            failed: Dict[str, Optional[str]] = {}
            for key, value in pending.items():
                try:
                    if value is None:
                        self.repository.remove(key)
                    else:
                        self.repository.set(key, value)
                except (OSError, redis.RedisError) as exc:
                    logger.warning("failed to persist %s, keeping it buffered: %s", key, exc)
                    failed[key] = value
            with self._lock:
                self._inflight = {}
                if failed:
                    for key, value in failed.items():
                        # a newer save staged during the write wins
                        self._buffer.setdefault(key, value)
                    if self._dirty_since is None:
                        self._dirty_since = self.clock()
            logger.debug("flushed %d model records", len(pending) - len(failed))
            return len(failed) < len(pending)
