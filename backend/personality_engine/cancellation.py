"""
Cooperative cancellation tokens.

A token is cancelled at most once. Linked tokens are cancelled when any of their parents
is, and remember which root token fired (``origin``) so callers can tell a caller abort
apart from an internal one.
"""
from __future__ import annotations
import asyncio
import contextlib
import logging
from typing import Any, Awaitable, List, Optional

logger = logging.getLogger(__name__)


class CancelledOperation(Exception):
    """Raised when work is interrupted by a cancelled token."""

    def __init__(self, reason: str, origin: Optional["CancellationToken"] = None):
        super().__init__(f"Operation cancelled: {reason}")
        self.reason = reason
        self.origin = origin


class CancellationToken:
    def __init__(self, name: str = "token"):
        self.name = name
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._origin: Optional[CancellationToken] = None
        self._children: List[CancellationToken] = []
        self._parents: List[CancellationToken] = []

    def __repr__(self) -> str:
        state = f"cancelled: {self._reason}" if self.cancelled else "active"
        return f"<CancellationToken {self.name} ({state})>"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    @property
    def origin(self) -> Optional["CancellationToken"]:
        return self._origin

    def cancel(self, reason: str = "cancelled", _origin: Optional["CancellationToken"] = None) -> bool:
        """Cancel this token and every token linked to it. Returns False if already cancelled."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._origin = _origin or self
        self._event.set()
        logger.debug(f"{self.name} cancelled: {reason}")
        for child in list(self._children):
            child.cancel(reason, _origin=self._origin)
        return True

    @classmethod
    def link(cls, *parents: Optional["CancellationToken"], name: str = "linked") -> "CancellationToken":
        """Create a token that fires when any of ``parents`` fires."""
        token = cls(name)
        for parent in parents:
            if parent is None:
                continue
            if parent.cancelled:
                token.cancel(parent.reason or "cancelled", _origin=parent.origin)
                continue
            parent._children.append(token)
            token._parents.append(parent)
        return token

    def release(self) -> None:
        """Detach from parents once the linked work is finished."""
        for parent in self._parents:
            with contextlib.suppress(ValueError):
                parent._children.remove(self)
        self._parents.clear()

    def fired_by(self, token: Optional["CancellationToken"]) -> bool:
        return token is not None and self.cancelled and self._origin is token

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancelledOperation(self._reason or "cancelled", self._origin)

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds or until cancelled. Returns True if cancelled."""
        if delay <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        return self.cancelled

    async def guard(self, awaitable: Awaitable[Any]) -> Any:
        """Await ``awaitable`` unless this token fires first, in which case the work is cancelled."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task
        if task.cancelled():
            raise CancelledOperation(self._reason or "cancelled", self._origin)
        return task.result()
