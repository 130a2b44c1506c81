"""Pluggable secret storage backends.

Provides the SecretStore ABC and concrete implementations for
in-memory, OS keyring, and Redis-backed persistence of the session blob.
Stores notify subscribers when a key changes outside this process.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import hashlib
import logging
import threading

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import keyring

from keyring.errors import KeyringError, PasswordDeleteError

from .exceptions import SecretStoreError
from .sync_helpers import get_loop


if TYPE_CHECKING:
    from collections.abc import Callable


logger = logging.getLogger("sessionkeeper.secrets")


class SecretStore(ABC):
    """Abstract base class for secret storage.

    All data methods are async to support both local and network-backed
    stores. Change listeners are called on a background thread with the
    changed key.
    """

    def __init__(self) -> None:
        """Initialize the listener registry."""
        self._listeners: list[Callable[[str], None]] = []
        self._listeners_lock = threading.Lock()

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Read the secret stored under ``key``.

        Returns
        -------
        str or None
            The stored value, or None if not found.

        Raises
        ------
        SecretStoreError
            If the backend could not be read.
        """

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete ``key``. Deleting a missing key is not an error."""

    async def close(self) -> None:  # noqa: B027
        """Release backend resources and stop watching."""

    def subscribe(self, listener: Callable[[str], None]) -> Callable[[], None]:
        """Register a change listener.

        Parameters
        ----------
        listener : callable
            Called with the changed key from a background thread.

        Returns
        -------
        callable
            Function that removes the listener again.
        """
        with self._listeners_lock:
            self._listeners.append(listener)
            first = len(self._listeners) == 1
        if first:
            self._start_watching()

        def _unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _start_watching(self) -> None:
        """Start observing external changes once the first listener arrives."""

    def _dispatch(self, key: str) -> None:
        """Call every listener with ``key`` on a daemon thread."""
        with self._listeners_lock:
            listeners = list(self._listeners)
        if not listeners:
            return

        def _run() -> None:
            for listener in listeners:
                try:
                    listener(key)
                except Exception:
                    logger.exception("Secret change listener %r failed", listener)

        threading.Thread(target=_run, name="sessionkeeper-secret-change", daemon=True).start()


class MemorySecretStore(SecretStore):
    """In-memory secret store for development, tests and single-process use.

    Thread-safe via asyncio.Lock. Every write notifies subscribers.
    """

    def __init__(self) -> None:
        """Initialize the memory secret store."""
        super().__init__()
        self._data: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        """Read a secret from memory."""
        async with self._lock:
            return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        """Write a secret to memory."""
        async with self._lock:
            self._data[key] = value
        self._dispatch(key)

    async def delete(self, key: str) -> None:
        """Delete a secret from memory."""
        async with self._lock:
            existed = self._data.pop(key, None) is not None
        if existed:
            self._dispatch(key)


def _digest(value: str | None) -> str | None:
    if value is None:
        return None
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class KeyringSecretStore(SecretStore):
    """OS keyring-backed secret store for persistent native credentials.

    The keyring API has no change events, so subscribed keys are polled
    every ``watch_interval`` seconds and compared by digest.

    Parameters
    ----------
    service_name : str
        Service name for keyring storage (default "sessionkeeper").
    watch : bool
        Poll for external changes while listeners are registered.
    watch_interval : float
        Seconds between polls.
    """

    def __init__(
        self,
        service_name: str = "sessionkeeper",
        watch: bool = True,
        watch_interval: float = 5.0,
    ) -> None:
        """Initialize the keyring secret store."""
        super().__init__()
        self._service_name = service_name
        self._watch = watch
        self._watch_interval = watch_interval
        self._watched: dict[str, str | None] = {}
        self._stop = threading.Event()
        self._watcher: threading.Thread | None = None

    async def _call(self, func: Callable[..., Any], *args: Any, key: str) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func, self._service_name, *args)
        except KeyringError as exc:
            msg = f"Keyring operation failed: {exc}"
            raise SecretStoreError(msg, key=key, service=self._service_name) from exc

    async def get(self, key: str) -> str | None:
        """Read a secret from the OS keyring."""
        value = await self._call(keyring.get_password, key, key=key)
        self._watched[key] = _digest(value)
        return value

    async def set(self, key: str, value: str) -> None:
        """Write a secret to the OS keyring."""
        await self._call(keyring.set_password, key, value, key=key)
        self._watched[key] = _digest(value)

    async def delete(self, key: str) -> None:
        """Delete a secret from the OS keyring."""
        try:
            await self._call(keyring.delete_password, key, key=key)
        except SecretStoreError as exc:
            if not isinstance(exc.__cause__, PasswordDeleteError):
                raise
            logger.debug("Keyring entry %s already absent", key)
        self._watched[key] = None

    async def close(self) -> None:
        """Stop the polling watcher."""
        self._stop.set()
        self._watcher = None

    def _start_watching(self) -> None:
        if not self._watch or self._watcher is not None:
            return
        self._stop.clear()
        self._watcher = threading.Thread(
            target=self._poll, name="sessionkeeper-keyring-watch", daemon=True
        )
        self._watcher.start()

    def poll_once(self) -> list[str]:
        """Compare every watched key with the keyring and dispatch changes.

        Returns
        -------
        list[str]
            The keys whose value changed since they were last seen.
        """
        changed: list[str] = []
        for key, seen in list(self._watched.items()):
            try:
                current = _digest(keyring.get_password(self._service_name, key))
            except KeyringError:
                logger.warning("Polling keyring entry %s failed", key, exc_info=True)
                continue
            if current != seen:
                self._watched[key] = current
                changed.append(key)
                self._dispatch(key)
        return changed

    def _poll(self) -> None:
        while not self._stop.wait(self._watch_interval):
            self.poll_once()


class RedisSecretStore(SecretStore):
    """Redis-backed secret store shared between processes.

    Writes publish the changed key on ``{prefix}:secrets:changed``; a pub/sub
    listener on the background loop delivers other writers' changes.

    Parameters
    ----------
    redis_url : str
        Redis connection URL.
    prefix : str
        Key prefix for namespacing (default "sessionkeeper").
    pool_size : int
        Connection pool size (default 10).
    watch : bool
        Listen for change notifications while listeners are registered.
    client : redis.asyncio.Redis, optional
        Pre-configured client (e.g. fakeredis in tests).
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "sessionkeeper",
        pool_size: int = 10,
        watch: bool = True,
        client: Any = None,
    ) -> None:
        """Initialize the Redis secret store."""
        try:
            from redis.asyncio import Redis as RedisClient
        except ImportError:
            msg = "Redis backend requires the 'redis' package. Install with: pip install sessionkeeper[redis]"
            raise ImportError(msg) from None

        super().__init__()
        self._prefix = prefix
        self._watch = watch
        self._redis: Any = client or RedisClient.from_url(
            redis_url,
            max_connections=pool_size,
            decode_responses=True,
        )
        self._listen_future: Any = None

    @property
    def channel(self) -> str:
        """Pub/sub channel carrying changed keys."""
        return f"{self._prefix}:secrets:changed"

    def _key(self, key: str) -> str:
        """Build a Redis key with prefix."""
        return f"{self._prefix}:secrets:{key}"

    async def get(self, key: str) -> str | None:
        """Read a secret from Redis."""
        try:
            value = await self._redis.get(self._key(key))
        except Exception as exc:
            msg = f"Redis read failed: {exc}"
            raise SecretStoreError(msg, key=key) from exc
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def set(self, key: str, value: str) -> None:
        """Write a secret to Redis and publish the change."""
        try:
            await self._redis.set(self._key(key), value)
            await self._redis.publish(self.channel, key)
        except Exception as exc:
            msg = f"Redis write failed: {exc}"
            raise SecretStoreError(msg, key=key) from exc

    async def delete(self, key: str) -> None:
        """Delete a secret from Redis and publish the change."""
        try:
            if await self._redis.delete(self._key(key)):
                await self._redis.publish(self.channel, key)
        except Exception as exc:
            msg = f"Redis delete failed: {exc}"
            raise SecretStoreError(msg, key=key) from exc

    async def listen(self) -> None:
        """Forward change notifications to listeners until cancelled."""
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self.channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                data = message.get("data")
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                self._dispatch(str(data))
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()

    def _start_watching(self) -> None:
        if not self._watch or self._listen_future is not None:
            return
        self._listen_future = asyncio.run_coroutine_threadsafe(self.listen(), get_loop())

    async def close(self) -> None:
        """Stop listening and close the connection pool."""
        future, self._listen_future = self._listen_future, None
        if future is not None:
            future.cancel()
        await self._redis.aclose()


def create_secret_store(backend: str = "memory", **kwargs: Any) -> SecretStore:
    """Build a new secret store for ``backend``.

    Parameters
    ----------
    backend : str
        Storage backend: "memory", "keyring", or "redis".
    **kwargs : Any
        Keyword arguments passed to the store constructor.

    Returns
    -------
    SecretStore
        A configured secret store instance.
    """
    if backend == "memory":
        return MemorySecretStore()
    if backend == "keyring":
        return KeyringSecretStore(
            service_name=kwargs.get("service_name", "sessionkeeper"),
            watch=kwargs.get("watch", True),
            watch_interval=kwargs.get("watch_interval", 5.0),
        )
    if backend == "redis":
        return RedisSecretStore(
            redis_url=kwargs.get("redis_url", "redis://localhost:6379/0"),
            prefix=kwargs.get("prefix", "sessionkeeper"),
            pool_size=kwargs.get("pool_size", 10),
            watch=kwargs.get("watch", True),
        )
    msg = f"Unknown secret store backend: {backend}"
    raise ValueError(msg)


__all__ = [
    "KeyringSecretStore",
    "MemorySecretStore",
    "RedisSecretStore",
    "SecretStore",
    "create_secret_store",
]
