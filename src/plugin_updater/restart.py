"""Deferred service reload after a successful build.

The reload runs a few seconds after ``perform_update`` returns so the
caller's HTTP response is flushed first. It prefers ``pm2 reload``
(zero downtime) and falls back to ``pm2 restart``. The update lock is
released by the ``on_done`` hook only once the reload attempt finishes.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from plugin_updater.exceptions import RestartSchedulingError
from plugin_updater.fallback import Strategy, StrategiesExhaustedError, first_successful
from plugin_updater.logging import get_logger
from plugin_updater.process import ProcessRunner

log = get_logger("plugin_updater.restart")


class RestartScheduler:
    """Schedule ``<supervisor> reload|restart <service>`` out of band."""

    def __init__(
        self,
        runner: ProcessRunner,
        service_name: str = "hydrooj",
        *,
        delay_seconds: float = 15,
        timeout: float = 30,
        supervisor: str = "pm2",
    ) -> None:
        self._runner = runner
        self._service = service_name
        self._delay = delay_seconds
        self._timeout = timeout
        self._supervisor = supervisor
        self._tasks: set[asyncio.Task[str | None]] = set()

    @property
    def delay_seconds(self) -> float:
        return self._delay

    @property
    def pending(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def strategies(self) -> list[Strategy[str]]:
        def make(action: str) -> Strategy[str]:
            async def attempt() -> str:
                result = await self._runner.run(
                    self._supervisor, [action, self._service], timeout=self._timeout
                )
                if not result.ok:
                    raise RestartSchedulingError(
                        f"{self._supervisor} {action} {self._service} failed "
                        f"({result.status.value}, exit {result.returncode})",
                        transcript=result.output,
                    )
                return action

            return Strategy(name=action, attempt=attempt)

        return [make("reload"), make("restart")]

    async def reload_now(self) -> str:
        """Reload, falling back to restart; return the action that worked."""
        try:
            outcome = await first_successful(
                self.strategies(),
                on_failure=lambda name, exc: log.warning(
                    "service_action_failed", action=name, error=exc.message
                ),
            )
        except StrategiesExhaustedError as exc:
            raise RestartSchedulingError(
                f"Could not reload or restart {self._service}", transcript=exc.transcript
            ) from exc
        log.info("service_reloaded", service=self._service, action=outcome.name)
        return outcome.value

    def schedule(self, on_done: Callable[[], None] | None = None) -> asyncio.Task[str | None]:
        """Start the delayed reload; *on_done* runs when it has finished."""
        try:
            task = asyncio.get_running_loop().create_task(self._delayed(on_done))
        except RuntimeError as exc:
            raise RestartSchedulingError(f"Cannot schedule restart: {exc}") from exc
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        log.info("restart_scheduled", service=self._service, delay_seconds=self._delay)
        return task

    async def wait(self) -> None:
        """Wait for every scheduled reload to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _delayed(self, on_done: Callable[[], None] | None) -> str | None:
        try:
            await asyncio.sleep(self._delay)
            return await self.reload_now()
        except RestartSchedulingError as exc:
            log.error("service_reload_failed", service=self._service, error=exc.message)
            return None
        finally:
            if on_done is not None:
                on_done()
