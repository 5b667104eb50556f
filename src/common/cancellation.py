from __future__ import annotations

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class TurnCancelled(Exception):
    def __init__(self, reason: str = "cancel"):
        super().__init__(reason)
        self.reason = reason


class CancellationToken:
    """Cooperative abort handle shared by the model loop and every tool call.

    Checked at each await point via ``raise_if_cancelled``. Callbacks
    registered with ``on_cancel`` run once, synchronously, when the token is
    first cancelled; a token cannot be un-cancelled.
    """

    def __init__(self) -> None:
        self._reason: str | None = None
        self._callbacks: list[Callable[[str], None]] = []
        self._event: asyncio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancel") -> bool:
        if self._reason is not None:
            return False
        self._reason = reason
        if self._event is not None:
            self._event.set()
        for callback in list(self._callbacks):
            try:
                callback(reason)
            except Exception:
                logger.exception("Cancellation callback failed")
        return True

    def on_cancel(self, callback: Callable[[str], None]) -> None:
        if self._reason is not None:
            callback(self._reason)
            return
        self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise TurnCancelled(self._reason)

    async def wait(self) -> str:
        if self._reason is None:
            if self._event is None:
                self._event = asyncio.Event()
            await self._event.wait()
        return self._reason or "cancel"
