"""Single gate for stream restarts.

Every restart trigger (duration guard, duration-exceeded error, transient
provider error, open failure) goes through ``request_restart``. While a
restart is pending or running, further requests are dropped rather than
queued: a second trigger for the same condition carries no new
information, and queuing is what turns a provider that keeps rejecting
fresh streams into a restart storm.

All methods must be called from the owning event loop.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Awaitable, Callable, Optional

log = logging.getLogger(__name__)

RestartAction = Callable[[], Awaitable[None]]
FailureHook = Callable[[BaseException], None]


class RestartState(enum.Enum):
    IDLE = 'idle'
    PENDING_RESTART = 'pending_restart'
    RESTARTING = 'restarting'


class RestartScheduler:
    def __init__(
        self,
        action: RestartAction,
        *,
        on_failure: Optional[FailureHook] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._action = action
        self._on_failure = on_failure
        self._loop = loop
        self.state = RestartState.IDLE
        self._pending: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._guard: Optional[asyncio.TimerHandle] = None
        self.executed = 0

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    # ------------------------------------------------------------------
    # Restart gate
    # ------------------------------------------------------------------
    def request_restart(self, delay: float, reason: str = 'unspecified') -> bool:
        """Arm one delayed restart; returns False if the request collapsed."""
        if self.state is not RestartState.IDLE:
            log.debug('Restart request ignored (reason=%s state=%s)', reason, self.state.value)
            return False
        self.state = RestartState.PENDING_RESTART
        log.info('Restart scheduled in %.2fs (reason=%s)', delay, reason)
        self._pending = self._get_loop().call_later(max(0.0, delay), self._fire, reason)
        return True

    def _fire(self, reason: str) -> None:
        self._pending = None
        self.state = RestartState.RESTARTING
        self._task = self._get_loop().create_task(self._execute(reason))

    async def _execute(self, reason: str) -> None:
        me = asyncio.current_task()
        error: Optional[Exception] = None
        try:
            await self._action()
        except Exception as exc:
            error = exc
        finally:
            # A cancelled restart must not reset state that cancel() already
            # handed over to a newer request.
            if self._task is me:
                self.state = RestartState.IDLE
                self._task = None
                self.executed += 1
        if error is not None:
            log.warning('Restart failed (reason=%s): %s', reason, error)
            if self._on_failure is not None:
                self._on_failure(error)

    # ------------------------------------------------------------------
    # Duration guard
    # ------------------------------------------------------------------
    def arm_guard(self, seconds: float) -> None:
        self.disarm_guard()
        self._guard = self._get_loop().call_later(seconds, self._guard_expired, seconds)

    def disarm_guard(self) -> None:
        if self._guard is not None:
            self._guard.cancel()
            self._guard = None

    @property
    def guard_armed(self) -> bool:
        return self._guard is not None

    def _guard_expired(self, seconds: float) -> None:
        self._guard = None
        log.info('Stream reached the %.0fs safety margin; swapping', seconds)
        self.request_restart(0.0, reason='duration_guard')

    # ------------------------------------------------------------------
    def cancel(self) -> None:
        """Drop the guard, any pending restart and any restart in flight."""
        self.disarm_guard()
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        task = self._task
        self._task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self.state = RestartState.IDLE
