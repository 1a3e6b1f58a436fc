from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0
EXTENDED_TIMEOUT = 300.0


@dataclass(slots=True)
class _OutstandingRequest:
    request_id: int | str
    on_expire: Callable[[], None]
    handle: asyncio.TimerHandle
    extended: bool = False


class TimeoutCoordinator:
    """Per-request deadlines for outstanding tool calls on one session.

    Each request starts with the baseline timeout. Extending a request cancels
    its current timer and arms a fresh one with the extended timeout, so time
    is never added to what remains. Expired, finished, and cleared requests are
    forgotten immediately.
    """

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        extended_timeout: float = EXTENDED_TIMEOUT,
    ) -> None:
        self.timeout = timeout
        self.extended_timeout = extended_timeout
        self._requests: dict[int | str, _OutstandingRequest] = {}

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._requests

    def __len__(self) -> int:
        return len(self._requests)

    def is_extended(self, request_id: int | str) -> bool:
        entry = self._requests.get(request_id)
        return entry is not None and entry.extended

    def start(self, request_id: int | str, on_expire: Callable[[], None]) -> None:
        """Arm the baseline timer for a request, replacing any existing timer."""
        existing = self._requests.pop(request_id, None)
        if existing is not None:
            existing.handle.cancel()
        handle = self._arm(request_id, self.timeout)
        self._requests[request_id] = _OutstandingRequest(
            request_id=request_id,
            on_expire=on_expire,
            handle=handle,
        )

    def extend(self, request_id: int | str) -> bool:
        """Reset one request's timer to the extended timeout.

        Returns False when the request is unknown (already finished or expired).
        """
        entry = self._requests.get(request_id)
        if entry is None:
            return False
        entry.handle.cancel()
        entry.handle = self._arm(request_id, self.extended_timeout)
        entry.extended = True
        return True

    def extend_all(self) -> int:
        """Extend every outstanding request; returns how many were extended."""
        request_ids = list(self._requests)
        for request_id in request_ids:
            self.extend(request_id)
        if request_ids:
            logger.debug("Extended %d outstanding request timer(s)", len(request_ids))
        return len(request_ids)

    def finish(self, request_id: int | str) -> None:
        """Forget a request and cancel its timer."""
        entry = self._requests.pop(request_id, None)
        if entry is not None:
            entry.handle.cancel()

    def clear(self) -> None:
        for entry in self._requests.values():
            entry.handle.cancel()
        self._requests.clear()

    def _arm(self, request_id: int | str, delay: float) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(delay, self._expire, request_id)

    def _expire(self, request_id: int | str) -> None:
        entry = self._requests.pop(request_id, None)
        if entry is None:
            return
        logger.warning(
            "Request %s timed out after %.1fs",
            request_id,
            self.extended_timeout if entry.extended else self.timeout,
        )
        entry.on_expire()
