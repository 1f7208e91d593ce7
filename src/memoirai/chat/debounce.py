"""Cancellable delayed calls for editor-driven work."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class Debouncer:
    """Runs an async callback once input has been quiet for ``delay`` seconds.

    Each :meth:`schedule` cancels the previously scheduled call, so only the
    most recent one fires. Superseded calls are dropped, never queued.
    :meth:`aclose` cancels anything pending and refuses further scheduling.

    Must be used from inside a running event loop.

    Example:
        >>> debouncer = Debouncer(2.0, analyze)
        >>> debouncer.schedule(text)   # replaced by the next call
        >>> debouncer.schedule(text2)  # fires 2s later unless replaced
    """

    def __init__(self, delay: float, callback: Callable[..., Awaitable[Any]]) -> None:
        self._delay = delay
        self._callback = callback
        self._task: asyncio.Task | None = None
        self._closed = False
        self._logger = logging.getLogger(f"{__name__}.Debouncer")

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def closed(self) -> bool:
        return self._closed

    def schedule(self, *args: Any, **kwargs: Any) -> asyncio.Task:
        """Replace any pending call with a new one.

        Raises:
            RuntimeError: If the debouncer has been closed.
        """
        if self._closed:
            raise RuntimeError("Debouncer is closed")
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(self._run(*args, **kwargs))
        return self._task

    def cancel(self) -> None:
        if self.pending:
            self._task.cancel()
        self._task = None

    async def flush(self) -> None:
        """Wait for the pending call, if any, to finish."""
        task = self._task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def aclose(self) -> None:
        self._closed = True
        task = self._task
        self.cancel()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self, *args: Any, **kwargs: Any) -> None:
        await asyncio.sleep(self._delay)
        try:
            await self._callback(*args, **kwargs)
        except Exception as e:
            self._logger.error(f"Debounced callback failed: {type(e).__name__}")
