"""Cooperative cancellation shared by the request timer and the network call."""

import asyncio
from enum import Enum
from typing import Any, Awaitable, List, Optional, TypeVar

from rental_analysis.exceptions import RequestCancelledError, RequestTimeoutError


T = TypeVar("T")


class CancelReason(Enum):
    USER = "user"
    TIMEOUT = "timeout"


class CancellationToken:
    """
    One-shot cancellation signal.

    The first ``cancel`` wins and fixes the reason; later calls are no-ops.
    Child tokens are cancelled together with their parent, which lets a
    per-attempt deadline and a request-wide user cancel share one token.
    """

    def __init__(self, timeout_ms: Optional[int] = None):
        self._event = asyncio.Event()
        self._reason: Optional[CancelReason] = None
        self._children: List["CancellationToken"] = []
        self.timeout_ms = timeout_ms

    @property
    def reason(self) -> Optional[CancelReason]:
        return self._reason

    def is_cancelled(self) -> bool:
        return self._reason is not None

    def cancel(self, reason: CancelReason = CancelReason.USER) -> None:
        if self._reason is not None:
            return
        self._reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    def child(self, timeout_ms: Optional[int] = None) -> "CancellationToken":
        """Create a token that is cancelled whenever this one is."""
        token = CancellationToken(timeout_ms=timeout_ms)
        if self._reason is not None:
            token.cancel(self._reason)
        else:
            self._children.append(token)
        return token

    def detach(self, child: "CancellationToken") -> None:
        if child in self._children:
            self._children.remove(child)

    def error(self) -> Exception:
        """Exception describing why the token was cancelled."""
        if self._reason == CancelReason.TIMEOUT:
            return RequestTimeoutError(self.timeout_ms or 0)
        return RequestCancelledError()

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise self.error()

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` unless the token fires first.

        Raises:
            RequestTimeoutError or RequestCancelledError when the token wins;
            the pending awaitable is cancelled in that case.
        """
        self.raise_if_cancelled()
        task: "asyncio.Future[Any]" = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

        if task in done:
            return task.result()

        # Let the aborted operation unwind; its own outcome is superseded.
        await asyncio.gather(task, return_exceptions=True)
        raise self.error()
