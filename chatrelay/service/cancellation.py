from __future__ import annotations

import asyncio
import threading
from typing import Dict, List, Optional, Tuple

from chatrelay.logging import get_logger

logger = get_logger(__name__)


class CancelHandle:
    """Cancellation flag for one in-flight turn.

    ``cancel`` may be called from any thread or event loop. Coroutines
    blocked in ``wait`` on their own loop are woken through
    ``call_soon_threadsafe``.
    """

    def __init__(self, turn_id: str) -> None:
        self.turn_id = turn_id
        self._flag = threading.Event()
        self._lock = threading.Lock()
        self._waiters: List[Tuple[asyncio.AbstractEventLoop, asyncio.Event]] = []

    @property
    def cancelled(self) -> bool:
        return self._flag.is_set()

    def cancel(self) -> bool:
        """Set the flag. Returns False if it was already set."""
        with self._lock:
            if self._flag.is_set():
                return False
            self._flag.set()
            waiters = list(self._waiters)
        for loop, event in waiters:
            if not loop.is_closed():
                loop.call_soon_threadsafe(event.set)
        return True

    async def wait(self) -> None:
        if self._flag.is_set():
            return
        entry = (asyncio.get_running_loop(), asyncio.Event())
        with self._lock:
            if self._flag.is_set():
                return
            self._waiters.append(entry)
        try:
            await entry[1].wait()
        finally:
            with self._lock:
                if entry in self._waiters:
                    self._waiters.remove(entry)

    def __repr__(self) -> str:
        return f"CancelHandle(turn_id={self.turn_id!r}, cancelled={self.cancelled})"


class CancellationRegistry:
    """Maps a user id to the cancel handle of that user's in-flight turn.

    At most one entry per user: registering a new turn cancels and
    replaces whatever was there.
    """

    def __init__(self) -> None:
        self._handles: Dict[str, CancelHandle] = {}
        self._lock = threading.Lock()

    def register(self, user_id: str, turn_id: str) -> CancelHandle:
        handle = CancelHandle(turn_id)
        with self._lock:
            prior = self._handles.get(user_id)
            self._handles[user_id] = handle
        if prior is not None:
            prior.cancel()
            logger.info(
                "turn_superseded",
                user_id=user_id,
                turn_id=prior.turn_id,
                replacement_turn_id=turn_id,
            )
        return handle

    def signal(self, user_id: str) -> Optional[str]:
        """Cancel and drop the user's in-flight turn, returning its turn id."""
        with self._lock:
            handle = self._handles.pop(user_id, None)
        if handle is None:
            return None
        handle.cancel()
        return handle.turn_id

    def deregister(self, user_id: str, handle: CancelHandle) -> bool:
        with self._lock:
            if self._handles.get(user_id) is not handle:
                return False
            del self._handles[user_id]
            return True

    def active(self, user_id: str) -> Optional[CancelHandle]:
        with self._lock:
            return self._handles.get(user_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
