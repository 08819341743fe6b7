# metergate/gate/nonce.py
"""
Replay protection for metered requests.

Every (agent key id, nonce) pair may be consumed once per TTL window.
Stores share one contract: check_and_consume returns True the first time a
pair is seen and marks it consumed in the same atomic step.

Backends:
- InMemoryNonceStore: default, correct for a single gate instance
- FileNonceStore: single instance, survives restarts
- RedisNonceStore: shared across gate instances (SET NX EX, one round trip)

Configuration:
- METER_NONCE_TTL_SECONDS: how long a consumed pair is remembered (default: 3600)
- METER_NONCE_SWEEP_INTERVAL_SECONDS: how often expired pairs are dropped (default: 300)
- METER_NONCE_STORE: memory | file | redis
"""
import asyncio
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol, runtime_checkable

from metergate.core.config import settings

logger = logging.getLogger(__name__)

KEY_SEPARATOR = ":"


def nonce_key(agent_key_id: str, nonce: str) -> str:
    return f"{agent_key_id}{KEY_SEPARATOR}{nonce}"


@runtime_checkable
class NonceStore(Protocol):
    ttl_seconds: float

    async def check_and_consume(self, nonce: str, agent_key_id: str) -> bool: ...


class InMemoryNonceStore:
    """
    Process-local nonce store.

    The check and the insert happen under one lock with no await in between,
    so concurrent requests carrying the same pair cannot both succeed.
    Expired pairs are swept every sweep_interval_seconds.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        sweep_interval_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.METER_NONCE_TTL_SECONDS
        self._sweep_interval = (
            sweep_interval_seconds
            if sweep_interval_seconds is not None
            else settings.METER_NONCE_SWEEP_INTERVAL_SECONDS
        )
        self._clock = clock
        self._entries: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    async def check_and_consume(self, nonce: str, agent_key_id: str) -> bool:
        return self.consume(nonce, agent_key_id)

    def consume(self, nonce: str, agent_key_id: str) -> bool:
        """Synchronous check-and-set shared by the async entry point."""
        key = nonce_key(agent_key_id, nonce)
        now = self._clock()
        with self._lock:
            self._maybe_sweep(now)
            first_seen = self._entries.get(key)
            if first_seen is not None and now - first_seen <= self.ttl_seconds:
                return False
            self._entries[key] = now
            return True

    def sweep(self) -> int:
        """Drop every entry older than the TTL. Returns the number removed."""
        with self._lock:
            return self._sweep(self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep < self._sweep_interval:
            return
        self._sweep(now)

    def _sweep(self, now: float) -> int:
        self._last_sweep = now
        expiry = now - self.ttl_seconds
        stale = [key for key, first_seen in self._entries.items() if first_seen < expiry]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug(f"Swept {len(stale)} expired nonce entries")
        return len(stale)


class FileNonceStore(InMemoryNonceStore):
    """
    Nonce store persisted to a JSON file.

    The whole map is rewritten after every successful consume, which is fine
    for the request rates a single gate instance sees. Writes go to a temp
    file that replaces the old one while the lock is held, so the file on
    disk always matches one consistent snapshot.
    """

    def __init__(
        self,
        path: Optional[str] = None,
        ttl_seconds: Optional[float] = None,
        sweep_interval_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(ttl_seconds, sweep_interval_seconds, clock)
        self.path = Path(path or settings.METER_NONCE_STORE_PATH)
        self._load()

    async def check_and_consume(self, nonce: str, agent_key_id: str) -> bool:
        # File I/O stays off the event loop
        return await asyncio.to_thread(self.consume, nonce, agent_key_id)

    def consume(self, nonce: str, agent_key_id: str) -> bool:
        key = nonce_key(agent_key_id, nonce)
        now = self._clock()
        with self._lock:
            self._maybe_sweep(now)
            first_seen = self._entries.get(key)
            if first_seen is not None and now - first_seen <= self.ttl_seconds:
                return False
            self._entries[key] = now
            self._save_locked()
            return True

    def sweep(self) -> int:
        with self._lock:
            removed = self._sweep(self._clock())
            if removed:
                self._save_locked()
            return removed

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text())
            with self._lock:
                self._entries = {str(k): float(v) for k, v in data.items()}
            logger.info(f"Loaded {len(self._entries)} nonces from {self.path}")
        except (OSError, ValueError, AttributeError) as e:
            logger.error(f"Failed to load nonces from {self.path}: {e}")

    def _save_locked(self) -> None:
        """Persist the map. Caller holds self._lock."""
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(self._entries))
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to save nonces to {self.path}: {e}")


class RedisNonceStore:
    """
    Shared nonce store for multi-instance deployments.

    Uses a redis.asyncio client; SET with NX and EX performs the conditional
    insert and the expiry in one round trip.
    """

    def __init__(self, client, ttl_seconds: Optional[float] = None, prefix: str = "meter:nonce:"):
        self.client = client
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.METER_NONCE_TTL_SECONDS
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisNonceStore":
        from redis.asyncio import Redis

        return cls(Redis.from_url(url, decode_responses=True), **kwargs)

    async def check_and_consume(self, nonce: str, agent_key_id: str) -> bool:
        key = self.prefix + nonce_key(agent_key_id, nonce)
        stored = await self.client.set(key, str(int(time.time() * 1000)), nx=True, ex=int(self.ttl_seconds))
        return bool(stored)


def create_nonce_store(kind: Optional[str] = None) -> NonceStore:
    """Build the nonce store selected by METER_NONCE_STORE."""
    kind = (kind or settings.METER_NONCE_STORE).lower()
    if kind == "memory":
        return InMemoryNonceStore()
    if kind == "file":
        return FileNonceStore()
    if kind == "redis":
        if not settings.METER_REDIS_URL:
            raise ValueError("METER_NONCE_STORE=redis requires METER_REDIS_URL")
        return RedisNonceStore.from_url(settings.METER_REDIS_URL)
    raise ValueError(f"Unknown nonce store type: {kind}")


async def check_nonce(nonce: str, agent_key_id: str, store: NonceStore) -> bool:
    """
    Consume a nonce for an agent.

    Returns:
        True if the pair had not been used within the TTL window
    """
    if settings.METER_ENVIRONMENT == "production" and type(store) is InMemoryNonceStore:
        logger.warning(
            "SECURITY WARNING: Using InMemoryNonceStore in production. "
            "Nonces are lost on restart, allowing replays. "
            "Use FileNonceStore or RedisNonceStore instead."
        )
    return await store.check_and_consume(nonce, agent_key_id)
