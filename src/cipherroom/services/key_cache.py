# src/cipherroom/services/key_cache.py
"""Per-session cache of unwrapped channel keys."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from cipherroom.core.settings import settings
from cipherroom.services.errors import E2EError, MissingGrantError, MissingPrivateKeyError
from cipherroom.services.identity import IdentityKeyStore
from cipherroom.services.keywrap import ChannelKey, KeyWrapEngine

logger = logging.getLogger(__name__)

GrantFetcher = Callable[[], Awaitable[str | None]]


@dataclass
class _FailedUnwrap:
    blob: str
    error: E2EError
    attempts: int


class SessionKeyCache:
    """Memoizes unwrapped channel keys for the lifetime of a client session.

    Concurrent misses for the same channel share one in-flight unwrap. The
    cache is never persisted; :meth:`clear` is called when the session ends.
    """

    def __init__(
        self,
        key_store: IdentityKeyStore,
        wrap_engine: KeyWrapEngine | None = None,
        *,
        attempt_limit: int | None = None,
    ) -> None:
        self._key_store = key_store
        self._wrap_engine = wrap_engine or KeyWrapEngine()
        self._attempt_limit = attempt_limit or settings.unwrap_attempt_limit
        self._keys: dict[str, ChannelKey] = {}
        self._inflight: dict[str, asyncio.Task[ChannelKey]] = {}
        self._failures: dict[str, _FailedUnwrap] = {}

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def get(self, channel_id: str) -> ChannelKey | None:
        """Return a cached key without triggering an unwrap."""
        return self._keys.get(channel_id)

    def prime(self, channel_id: str, key: ChannelKey) -> None:
        """Store a key the caller already holds in the clear."""
        self._keys[channel_id] = key
        self._failures.pop(channel_id, None)

    def invalidate(self, channel_id: str) -> None:
        """Forget the key and any recorded failure for one channel."""
        self._keys.pop(channel_id, None)
        self._failures.pop(channel_id, None)

    def clear(self) -> None:
        """Drop every cached key; in-flight unwraps finish but are not stored."""
        self._keys.clear()
        self._failures.clear()
        self._inflight.clear()

    async def get_or_unwrap(self, channel_id: str, fetch_grant: GrantFetcher) -> ChannelKey:
        """Return the channel key, unwrapping the caller's grant on a miss.

        Raises:
            MissingPrivateKeyError: If this device has no identity key.
            MissingGrantError: If ``fetch_grant`` finds no grant.
            KeyMismatchError: If the grant was wrapped for another identity.
        """
        cached = self._keys.get(channel_id)
        if cached is not None:
            return cached

        task = self._inflight.get(channel_id)
        if task is None:
            task = asyncio.create_task(self._load(channel_id, fetch_grant))
            self._inflight[channel_id] = task
            task.add_done_callback(lambda done, cid=channel_id: self._forget_inflight(cid, done))

        # A waiter that is cancelled must not cancel the shared unwrap.
        return await asyncio.shield(task)

    def _forget_inflight(self, channel_id: str, task: asyncio.Task[ChannelKey]) -> None:
        if self._inflight.get(channel_id) is task:
            del self._inflight[channel_id]
        if not task.cancelled():
            # Mark the exception retrieved when every waiter went away.
            task.exception()

    async def _load(self, channel_id: str, fetch_grant: GrantFetcher) -> ChannelKey:
        private_key = await self._key_store.get_local_private_key()
        if private_key is None:
            raise MissingPrivateKeyError("No identity private key on this device")

        blob = await fetch_grant()
        if blob is None:
            raise MissingGrantError(f"No key grant on record for channel {channel_id}")

        failure = self._failures.get(channel_id)
        if failure is not None:
            if failure.blob == blob or failure.attempts >= self._attempt_limit:
                raise failure.error

        try:
            key = await self._wrap_engine.unwrap(blob, private_key)
        except E2EError as err:
            attempts = failure.attempts + 1 if failure is not None else 1
            self._failures[channel_id] = _FailedUnwrap(blob=blob, error=err, attempts=attempts)
            logger.warning(
                "Unwrap failed for channel %s (attempt %d): %s", channel_id, attempts, err
            )
            raise

        self._failures.pop(channel_id, None)
        if self._inflight.get(channel_id) is asyncio.current_task():
            self._keys[channel_id] = key
        logger.debug("Cached channel key for %s", channel_id)
        return key
