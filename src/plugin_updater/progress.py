"""Progress observers.

The orchestrator reports every log line through a plain
``(step, message) -> None`` callback. ``ProgressEmitter`` sits in front of
the injected sink: it coalesces bursts of subprocess output, always
delivers terminal steps immediately, and never lets a failing sink abort
an update.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol

from plugin_updater.logging import get_logger
from plugin_updater.models import UpdateStep

log = get_logger("plugin_updater.progress")


class ProgressCallback(Protocol):
    def __call__(self, step: UpdateStep, message: str) -> None: ...


class LoggingProgressSink:
    """Sink that writes each progress event to the structured log."""

    def __init__(self, name: str = "plugin_updater.progress.sink") -> None:
        self._log = get_logger(name)

    def __call__(self, step: UpdateStep, message: str) -> None:
        self._log.info("update_step", step=step.value, message=message)


class ProgressEmitter:
    """Throttle and coalesce progress events for an external sink.

    Events arriving faster than *min_interval* are buffered and delivered
    as one joined message with the step of the latest event. A terminal
    step flushes the buffer and is delivered synchronously.
    """

    def __init__(
        self,
        sink: ProgressCallback | None,
        min_interval: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sink = sink
        self._min_interval = min_interval
        self._clock = clock
        self._last_emit: float | None = None
        self._pending: list[str] = []
        self._pending_step: UpdateStep | None = None
        self.failures = 0

    def __call__(self, step: UpdateStep, message: str) -> None:
        if self._sink is None:
            return
        if step.is_terminal:
            self.flush()
            self._deliver(step, message)
            return

        now = self._clock()
        if self._pending_step is not None and self._pending_step is not step:
            self.flush()
        if self._last_emit is None or now - self._last_emit >= self._min_interval:
            if self._pending:
                self._pending.append(message)
                self.flush()
            else:
                self._deliver(step, message)
            return

        self._pending.append(message)
        self._pending_step = step

    def flush(self) -> None:
        """Deliver buffered messages, if any."""
        if not self._pending or self._pending_step is None:
            self._pending.clear()
            self._pending_step = None
            return
        step = self._pending_step
        message = "\n".join(self._pending)
        self._pending.clear()
        self._pending_step = None
        self._deliver(step, message)

    def _deliver(self, step: UpdateStep, message: str) -> None:
        assert self._sink is not None
        self._last_emit = self._clock()
        try:
            self._sink(step, message)
        except Exception as exc:
            # Best effort: a broken sink must not fail the update
            self.failures += 1
            log.warning("progress_sink_failed", step=step.value, error=str(exc))
