import asyncio

from colloquy.errors import OperationCancelledError


class CancellationToken:
    """
    Cooperative cancellation signal threaded through every long-running step.

    Cancelling aborts the step in flight. Messages already appended to a conversation stay where
    they are, the history remains append-only.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()


def ensure_token(token: "CancellationToken | None") -> CancellationToken:
    return token if token is not None else CancellationToken()
