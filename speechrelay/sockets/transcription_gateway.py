"""Socket.IO handlers for live transcription.

Events (client -> server):
  start-stream          (alias: start-google-stream)   no payload
  audio-chunk           binary container chunk
  stop-stream           (alias: stop-google-stream)    no payload
  batch-analyze         (alias: google-batch-analyze)  full binary recording

Server emits (to the requesting client only):
  stream-ready     { session_id }
  transcript-data  { text, isFinal, speaker, words: [{word, start, end}] }
  stream-stopped   { session_id, generations, restarts, chunks_dropped, ... }
  stream-error     human-readable message
  batch-complete   speaker-grouped transcript text

One StreamSession per connection, created on connect and torn down on
disconnect.
"""
from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict, Optional

from flask import current_app, request

from speechrelay.extensions import socketio
from speechrelay.streaming import InvalidStateError, StreamSession
from speechrelay.transcription import StreamConfig
from speechrelay.transcription.batch import BatchTranscriptionError, run_batch
from speechrelay.transcription.factory import create_batch_recognizer, create_provider

log = logging.getLogger(__name__)


def _audit(event: str, **fields):
    """Emit a structured audit log line for traceability.

    Format: AUDIT | event=... key=value ...  (values with whitespace are JSON quoted)
    """
    parts = [f"event={event}"]
    for k, v in fields.items():
        if v is None:
            continue
        sv = str(v)
        if ' ' in sv or '\t' in sv:
            sv = json.dumps(sv)
        parts.append(f"{k}={sv}")
    log.info('AUDIT | ' + ' '.join(parts))


_sessions: Dict[str, StreamSession] = {}
_sessions_lock = threading.Lock()


def get_session(sid: str) -> Optional[StreamSession]:
    with _sessions_lock:
        return _sessions.get(sid)


def _emitter(sid: str):
    def _emit(event: str, payload: Any) -> None:
        socketio.emit(event, payload, to=sid)
    return _emit


def _as_bytes(data: Any) -> Optional[bytes]:
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)
    return None


@socketio.on('connect')
def _on_connect(auth=None):  # type: ignore
    sid = request.sid  # type: ignore[attr-defined]
    settings = current_app.config
    try:
        provider, provider_name = create_provider(settings.get('STT_PROVIDER'), settings)
    except Exception as exc:
        log.exception('Transcription provider unavailable')
        _audit('session_connect_failed', sid=sid, reason=str(exc))
        socketio.emit('stream-error', str(exc), to=sid)
        return
    session = StreamSession(sid, provider, _emitter(sid), settings)
    with _sessions_lock:
        previous = _sessions.pop(sid, None)
        _sessions[sid] = session
    if previous is not None:
        previous.close()
    _audit('session_connect', sid=sid, provider=provider_name)


@socketio.on('start-stream')
@socketio.on('start-google-stream')
def _on_start_stream(data=None):  # type: ignore
    sid = request.sid  # type: ignore[attr-defined]
    session = get_session(sid)
    if session is None:
        log.debug('start-stream from %s without a session', sid)
        return
    config = StreamConfig.from_config(current_app.config)
    _audit('stream_start', sid=sid, encoding=config.encoding, sample_rate=config.sample_rate_hz,
           language=config.language_code, model=config.model)

    def _done(future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if isinstance(exc, InvalidStateError):
            log.warning('Ignoring start-stream for %s: %s', sid, exc)
        elif exc is not None:
            log.error('start-stream failed for %s', sid, exc_info=exc)

    session.start(config).add_done_callback(_done)


@socketio.on('audio-chunk')
def _on_audio_chunk(data):  # type: ignore
    sid = request.sid  # type: ignore[attr-defined]
    chunk = _as_bytes(data)
    if chunk is None:
        log.debug('Ignoring non-binary audio-chunk from %s (%s)', sid, type(data).__name__)
        return
    session = get_session(sid)
    if session is None:
        return
    session.push_audio(chunk)


@socketio.on('stop-stream')
@socketio.on('stop-google-stream')
def _on_stop_stream(data=None):  # type: ignore
    sid = request.sid  # type: ignore[attr-defined]
    session = get_session(sid)
    if session is None:
        return

    def _done(future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            log.error('stop-stream failed for %s', sid, exc_info=exc)
            return
        stats = dict(future.result())
        _audit('stream_stop', sid=sid, reason='client_stop', **stats)
        stats['session_id'] = sid
        socketio.emit('stream-stopped', stats, to=sid)

    session.stop().add_done_callback(_done)


def _run_batch(sid: str, audio: bytes, settings: Dict[str, Any]) -> None:
    try:
        recognizer = create_batch_recognizer(settings.get('STT_PROVIDER'), settings)
        text = run_batch(
            recognizer,
            audio,
            StreamConfig.from_config(settings),
            timeout=float(settings.get('BATCH_TIMEOUT_SECONDS', 600.0)),
        )
    except Exception as exc:
        if not isinstance(exc, BatchTranscriptionError):
            log.exception('Batch analysis failed for %s', sid)
        else:
            log.warning('Batch analysis failed for %s: %s', sid, exc)
        socketio.emit('stream-error', f'Batch processing failed: {exc}', to=sid)
        return
    socketio.emit('batch-complete', text, to=sid)


@socketio.on('batch-analyze')
@socketio.on('google-batch-analyze')
def _on_batch_analyze(data):  # type: ignore
    sid = request.sid  # type: ignore[attr-defined]
    audio = _as_bytes(data)
    if audio is None:
        socketio.emit('stream-error', 'Batch processing failed: expected a binary recording', to=sid)
        return
    _audit('batch_request', sid=sid, size=len(audio))
    socketio.start_background_task(_run_batch, sid, audio, dict(current_app.config))


@socketio.on('disconnect')
def _on_disconnect(*args):  # type: ignore
    sid = request.sid  # type: ignore[attr-defined]
    with _sessions_lock:
        session = _sessions.pop(sid, None)
    if session is None:
        return
    stats = session.close() or {}
    _audit('session_disconnect', sid=sid, generations=stats.get('generations'),
           chunks_dropped=stats.get('chunks_dropped'))


def active_session_count() -> int:
    with _sessions_lock:
        return len(_sessions)
