"""External cancellation signal for a workflow run.

Cancelling stops the PhaseRunner from submitting new attempts; attempts
already in flight are allowed to finish or time out, and the run is then
persisted as ``failed`` with its cancellation marker set.
"""

import asyncio

import structlog

log = structlog.get_logger(__name__)


class CancellationToken:
    """One-shot cancellation flag that coroutines can poll or await.

    Example:
        >>> token = CancellationToken()
        >>> loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")
        >>> result = await engine.run(spec, cancellation=token)
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation. Later calls keep the first reason."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        log.warning("cancellation_requested", reason=reason)

    async def wait(self) -> None:
        """Block until cancellation is requested."""
        await self._event.wait()
