"""One client connection bound to one StreamController.

Socket.IO handlers run on transport threads; the controller is not
thread-safe. Each session therefore owns a private asyncio loop on a
daemon thread and every controller call is marshalled onto it, which
serialises start/write/stop, timer callbacks and provider callbacks.
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Callable, Mapping, Optional

from speechrelay.transcription.provider import StreamConfig, TranscriptEvent, TranscriptionProvider

from .controller import StreamController

log = logging.getLogger(__name__)

Emitter = Callable[[str, Any], None]


class StreamSession:
    def __init__(
        self,
        session_id: str,
        provider: TranscriptionProvider,
        emit: Emitter,
        settings: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.session_id = session_id
        self._emit = emit
        self.controller = StreamController.from_config(provider, self, settings or {}, session_id=session_id)
        self.loop = asyncio.new_event_loop()
        self._closed = False
        self._thread = threading.Thread(target=self._run_loop, name=f'stream-session-{session_id}', daemon=True)
        self._thread.start()

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self.loop)
        try:
            self.loop.run_forever()
        finally:
            pending = [t for t in asyncio.all_tasks(self.loop) if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                self.loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            self.loop.run_until_complete(self.loop.shutdown_asyncgens())
            self.loop.close()
            log.debug('Session %s loop closed', self.session_id)

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # ControllerListener (called on the session loop)
    # ------------------------------------------------------------------
    def on_ready(self) -> None:
        self._emit('stream-ready', {'session_id': self.session_id})

    def on_transcript(self, event: TranscriptEvent) -> None:
        self._emit('transcript-data', event.to_payload())

    def on_stream_error(self, message: str) -> None:
        self._emit('stream-error', message)

    # ------------------------------------------------------------------
    # Transport-facing API (any thread)
    # ------------------------------------------------------------------
    def start(self, config: StreamConfig) -> 'concurrent.futures.Future[None]':
        if self._closed:
            raise RuntimeError(f'session {self.session_id} is closed')
        return asyncio.run_coroutine_threadsafe(self.controller.start(config), self.loop)

    def push_audio(self, chunk: bytes) -> None:
        if self._closed:
            return
        try:
            self.loop.call_soon_threadsafe(self.controller.write, bytes(chunk))
        except RuntimeError:
            log.debug('Dropping audio for session %s; loop shut down', self.session_id)

    def stop(self) -> 'concurrent.futures.Future[dict]':
        if self._closed:
            raise RuntimeError(f'session {self.session_id} is closed')
        return asyncio.run_coroutine_threadsafe(self._stop(), self.loop)

    async def _stop(self) -> dict:
        stats = self.controller.stats()
        self.controller.stop()
        return stats

    def close(self, timeout: float = 2.0) -> Optional[dict]:
        """Implicit stop, then shut the session loop down.

        Returns the final run counters, or None if the session was already
        closed or the stop did not complete in time.
        """
        if self._closed:
            return None
        self._closed = True
        stats: Optional[dict] = None
        try:
            stats = asyncio.run_coroutine_threadsafe(self._stop(), self.loop).result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            log.warning('Timed out stopping session %s', self.session_id)
        finally:
            self.loop.call_soon_threadsafe(self.loop.stop)
            if threading.current_thread() is not self._thread:
                self._thread.join(timeout=timeout)
        return stats
