"""Synchronous helpers for the async collaborators.

The OIDC client and secret stores are async; the session lifecycle runs on
timer threads. ``run_async`` submits coroutines to one long-lived event loop
on a daemon thread so HTTP and Redis connections stay bound to a single loop
across calls.
"""

from __future__ import annotations

import asyncio
import threading
import time

from typing import TYPE_CHECKING, Any, TypeVar


if TYPE_CHECKING:
    from collections.abc import Coroutine


T = TypeVar("T")


class _LoopHolder:
    """Holder for the background event loop to avoid global statement."""

    loop: asyncio.AbstractEventLoop | None = None
    thread: threading.Thread | None = None


_holder = _LoopHolder()
_loop_lock = threading.Lock()


def get_loop() -> asyncio.AbstractEventLoop:
    """Get or start the background event loop."""
    with _loop_lock:
        if _holder.loop is not None and _holder.loop.is_running():
            return _holder.loop

        _holder.loop = asyncio.new_event_loop()

        def run_loop() -> None:
            loop = _holder.loop
            if loop is not None:
                asyncio.set_event_loop(loop)
                loop.run_forever()

        _holder.thread = threading.Thread(
            target=run_loop, name="sessionkeeper-loop", daemon=True
        )
        _holder.thread.start()

        for _ in range(50):  # 500ms max wait
            if _holder.loop.is_running():
                break
            time.sleep(0.01)

        return _holder.loop


def run_async(coro: Coroutine[Any, Any, T], timeout: float | None = 30.0) -> T:
    """Run a coroutine on the background loop and wait for its result.

    NOTE: must not be called from the background loop itself; that would
    deadlock. Use ``await`` directly in async code.

    Parameters
    ----------
    coro : Coroutine
        The coroutine to run.
    timeout : float, optional
        Timeout in seconds (default 30). ``None`` waits forever.

    Returns
    -------
    T
        The result of the coroutine.

    Raises
    ------
    TimeoutError
        If the operation times out.
    RuntimeError
        If called from the background loop.
    """
    loop = get_loop()
    try:
        running_loop = asyncio.get_running_loop()
    except RuntimeError:
        running_loop = None

    if running_loop is loop:
        coro.close()
        raise RuntimeError(
            "run_async() cannot be called from the background loop. Use 'await' directly instead."
        )

    future = asyncio.run_coroutine_threadsafe(coro, loop)
    try:
        return future.result(timeout=timeout)
    except TimeoutError:
        future.cancel()
        raise

