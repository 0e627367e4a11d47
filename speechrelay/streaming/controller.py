"""Stream lifecycle controller.

Owns the provider stream for one client session and keeps recognition
running across the provider's hard per-stream duration limit:

  IDLE -> STARTING -> STREAMING -> (RESTARTING -> STREAMING)* -> STOPPED

The controller swaps streams itself shortly before the provider would cut
them off (duration guard), and also on provider errors. Every swap goes
through the RestartScheduler gate and re-primes the new stream with the
run's container header before any further audio.

Not thread-safe: every method, timer and provider callback must run on
one event loop (see StreamSession).
"""
from __future__ import annotations

import enum
import logging
import re
import time
from typing import Any, Mapping, Optional, Protocol

from speechrelay.transcription.normalizer import normalize_result
from speechrelay.transcription.provider import (
    ProviderStream,
    ProviderStreamError,
    StreamConfig,
    TranscriptEvent,
    TranscriptionProvider,
)

from .header import HeaderBuffer
from .scheduler import RestartScheduler, RestartState

log = logging.getLogger(__name__)

# gRPC OUT_OF_RANGE; what the provider reports when a stream outlives its limit
DURATION_EXCEEDED_CODE = 11
_DURATION_EXCEEDED = re.compile(r'maximum (allowed )?stream duration', re.IGNORECASE)


class ControllerState(enum.Enum):
    IDLE = 'idle'
    STARTING = 'starting'
    STREAMING = 'streaming'
    RESTARTING = 'restarting'
    STOPPED = 'stopped'


_RUNNING = (ControllerState.STARTING, ControllerState.STREAMING, ControllerState.RESTARTING)


class ErrorKind(enum.Enum):
    EXPIRED = 'expired'
    TRANSIENT = 'transient'


class InvalidStateError(RuntimeError):
    pass


def classify_error(error: BaseException) -> ErrorKind:
    if getattr(error, 'code', None) == DURATION_EXCEEDED_CODE:
        return ErrorKind.EXPIRED
    if _DURATION_EXCEEDED.search(str(error)):
        return ErrorKind.EXPIRED
    return ErrorKind.TRANSIENT


class ControllerListener(Protocol):
    def on_ready(self) -> None: ...
    def on_transcript(self, event: TranscriptEvent) -> None: ...
    def on_stream_error(self, message: str) -> None: ...


class _StreamBinding:
    """Observer attached to exactly one stream generation."""

    __slots__ = ('_controller', 'generation')

    def __init__(self, controller: 'StreamController', generation: int):
        self._controller = controller
        self.generation = generation

    def on_result(self, result: Mapping[str, Any]) -> None:
        self._controller._handle_result(result, self.generation)

    def on_error(self, error: ProviderStreamError) -> None:
        self._controller._handle_error(error, self.generation)


class StreamController:
    def __init__(
        self,
        provider: TranscriptionProvider,
        listener: ControllerListener,
        *,
        session_id: str = '',
        guard_seconds: float = 290.0,
        expiry_restart_delay: float = 0.0,
        error_restart_delay: float = 1.0,
        open_retry_delay: float = 2.0,
        max_open_attempts: int = 5,
        stable_seconds: float = 10.0,
    ) -> None:
        self._provider = provider
        self._listener = listener
        self.session_id = session_id
        self.guard_seconds = guard_seconds
        self.expiry_restart_delay = expiry_restart_delay
        self.error_restart_delay = error_restart_delay
        self.open_retry_delay = open_retry_delay
        self.max_open_attempts = max(1, max_open_attempts)
        self.stable_seconds = stable_seconds

        self.state = ControllerState.IDLE
        self.config: Optional[StreamConfig] = None
        self.header = HeaderBuffer()
        self.scheduler = RestartScheduler(self.open_stream, on_failure=self._handle_open_failure)
        self._stream: Optional[ProviderStream] = None
        self._run = 0
        self.generation = 0
        self.open_failures = 0
        self.chunks_dropped = 0
        # A generation stays "establishing" until it delivers a result or
        # outlives stable_seconds; errors before that count as failed opens.
        self._establishing = False
        self._opened_at = 0.0

    @classmethod
    def from_config(cls, provider: TranscriptionProvider, listener: ControllerListener, settings: Mapping[str, Any], *, session_id: str = '') -> 'StreamController':
        return cls(
            provider,
            listener,
            session_id=session_id,
            guard_seconds=float(settings.get('STREAM_GUARD_SECONDS', 290.0)),
            expiry_restart_delay=float(settings.get('STREAM_EXPIRY_RESTART_DELAY_SECONDS', 0.0)),
            error_restart_delay=float(settings.get('STREAM_ERROR_RESTART_DELAY_SECONDS', 1.0)),
            open_retry_delay=float(settings.get('STREAM_OPEN_RETRY_DELAY_SECONDS', 2.0)),
            max_open_attempts=int(settings.get('STREAM_MAX_OPEN_ATTEMPTS', 5)),
            stable_seconds=float(settings.get('STREAM_STABLE_SECONDS', 10.0)),
        )

    @property
    def active_stream(self) -> Optional[ProviderStream]:
        return self._stream

    @property
    def restart_state(self) -> RestartState:
        return self.scheduler.state

    def stats(self) -> dict:
        return {
            'state': self.state.value,
            'generations': self.generation,
            'restarts': max(0, self.generation - 1),
            'chunks_dropped': self.chunks_dropped,
            'open_failures': self.open_failures,
        }

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def start(self, config: StreamConfig) -> None:
        if self.state in _RUNNING:
            raise InvalidStateError(f'session {self.session_id} is already {self.state.value}; stop it first')
        self._run += 1
        self.header.clear()
        self.config = config
        self.generation = 0
        self.open_failures = 0
        self.chunks_dropped = 0
        self._establishing = False
        self.state = ControllerState.STARTING
        log.info('Starting recognition run %s for session %s', self._run, self.session_id)
        try:
            await self.open_stream()
        except Exception as exc:
            log.warning('Initial stream open failed for session %s: %s', self.session_id, exc)
            self._handle_open_failure(exc)

    def write(self, chunk: bytes) -> None:
        if not chunk:
            return
        if self.state not in _RUNNING:
            log.debug('Dropping %d byte chunk; no recognition run (session=%s)', len(chunk), self.session_id)
            return
        if self.header.capture(chunk):
            log.debug('Captured %d byte container header (session=%s)', len(chunk), self.session_id)
        stream = self._stream
        if stream is None or stream.closed:
            # Expected during a swap; blocking here would stall real-time audio.
            self.chunks_dropped += 1
            log.debug('Dropping chunk; no active provider stream (session=%s)', self.session_id)
            return
        try:
            stream.write(chunk)
        except ProviderStreamError:
            self.chunks_dropped += 1
            log.debug('Provider stream refused chunk (session=%s)', self.session_id, exc_info=True)

    async def open_stream(self) -> None:
        """Swap in a fresh provider stream for the current run."""
        if self.config is None or self.state not in _RUNNING:
            raise InvalidStateError('open_stream requires an active recognition run')
        run = self._run
        if self._stream is not None:
            self.state = ControllerState.RESTARTING
            if self._establishing and self._is_stable():
                self._mark_healthy()
        self._teardown_stream()
        self.scheduler.disarm_guard()

        stream = await self._provider.open_stream(self.session_id, self.config)

        if run != self._run or self.state not in _RUNNING:
            log.info('Discarding stream opened for a finished run (session=%s)', self.session_id)
            stream.close()
            return

        generation = self.generation + 1
        stream.attach(_StreamBinding(self, generation))
        header = self.header.data
        if header is not None:
            # The provider cannot decode later chunks without the container header.
            try:
                stream.write(header)
            except ProviderStreamError:
                stream.detach()
                stream.close()
                raise
        self._stream = stream
        self.generation = generation
        self._establishing = True
        self._opened_at = time.monotonic()
        self.scheduler.arm_guard(self.guard_seconds)
        first = self.state is ControllerState.STARTING
        self.state = ControllerState.STREAMING
        log.info(
            'Provider stream generation %s open (session=%s header=%s)',
            generation, self.session_id, header is not None,
        )
        if first:
            self._listener.on_ready()

    def stop(self) -> None:
        self.scheduler.cancel()
        self._teardown_stream()
        self.header.clear()
        if self.state is not ControllerState.STOPPED:
            log.info('Recognition stopped for session %s', self.session_id)
        self.state = ControllerState.STOPPED

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _teardown_stream(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        # Detach first: the old stream must never report into a session
        # that has moved on to a newer generation.
        stream.detach()
        try:
            stream.close()
        except Exception:
            log.warning('Error closing provider stream (session=%s)', self.session_id, exc_info=True)

    def _is_stable(self) -> bool:
        return time.monotonic() - self._opened_at >= self.stable_seconds

    def _mark_healthy(self) -> None:
        self._establishing = False
        self.open_failures = 0

    def _handle_result(self, result: Mapping[str, Any], generation: int) -> None:
        word_timing = self.config.enable_word_time_offsets if self.config is not None else True
        event = normalize_result(result, word_timing=word_timing)
        if event is None:
            return
        if generation == self.generation and self._establishing:
            self._mark_healthy()
        self._listener.on_transcript(event)

    def _handle_error(self, error: ProviderStreamError, generation: int) -> None:
        if self.state not in _RUNNING:
            return
        kind = classify_error(error)
        current = generation == self.generation
        if kind is ErrorKind.EXPIRED:
            if current:
                self._mark_healthy()
            log.info('Stream generation %s exceeded provider duration (session=%s)', generation, self.session_id)
            self.scheduler.request_restart(self.expiry_restart_delay, reason='duration_exceeded')
        elif current and self._establishing and not self._is_stable():
            # Rejected before it ever delivered: the stream was never established.
            self._establishing = False
            log.warning(
                'Stream generation %s rejected before establishing (session=%s code=%s): %s',
                generation, self.session_id, getattr(error, 'code', None), error,
            )
            self._handle_open_failure(error)
        else:
            if current and self._establishing:
                self._mark_healthy()
            log.warning(
                'Provider error on generation %s (session=%s code=%s): %s',
                generation, self.session_id, getattr(error, 'code', None), error,
            )
            self.scheduler.request_restart(self.error_restart_delay, reason='provider_error')

    def _handle_open_failure(self, error: BaseException) -> None:
        if self.state not in _RUNNING:
            return
        self.open_failures += 1
        if self.open_failures >= self.max_open_attempts:
            log.error(
                'Giving up after %s failed stream opens (session=%s): %s',
                self.open_failures, self.session_id, error,
            )
            self.stop()
            self._listener.on_stream_error(f'Unable to open recognition stream: {error}')
            return
        self.scheduler.request_restart(self.open_retry_delay, reason='open_failure')
