"""Google Cloud Speech-to-Text provider.

Streaming:
 - ``streaming_recognize`` is a blocking gRPC call, so each stream
   generation runs it on a worker thread fed by a request queue.
 - Responses are converted with proto-plus ``to_dict`` and handed back to
   the owning event loop; only the first result of each response is
   forwarded, matching how the service reports the in-progress utterance.
 - A gRPC failure closes the generation and is reported once as a
   ProviderStreamError carrying the numeric status code (11 / OUT_OF_RANGE
   when the stream outlived the service's duration limit).

Batch:
 - ``long_running_recognize`` with speaker diarization, used by the
   batch-analyze event.

The SpeechClient is created once per process and shared; credentials come
from inline service-account JSON (GOOGLE_KEY) or Application Default
Credentials.
"""
from __future__ import annotations

import asyncio
import json
import logging
import queue
import threading
from typing import Any, Dict, Iterator, List, Optional

try:
    from google.cloud import speech
    from google.oauth2 import service_account
except Exception:  # pragma: no cover - optional dependency
    speech = None  # type: ignore
    service_account = None  # type: ignore

from .provider import ProviderStream, ProviderStreamError, StreamConfig

log = logging.getLogger(__name__)

_CLIENT_SINGLETON: Dict[str, Any] = {
    'client': None,
}
_CLIENT_LOCK = threading.Lock()


def _load_client(credentials_json: Optional[str] = None):
    if speech is None:
        raise RuntimeError('google-cloud-speech not installed. Install with: pip install google-cloud-speech')
    with _CLIENT_LOCK:
        if _CLIENT_SINGLETON['client'] is None:
            if credentials_json:
                info = json.loads(credentials_json)
                credentials = service_account.Credentials.from_service_account_info(info)
                _CLIENT_SINGLETON['client'] = speech.SpeechClient(credentials=credentials)
            else:
                _CLIENT_SINGLETON['client'] = speech.SpeechClient()
            log.info('Google SpeechClient initialised (inline_credentials=%s)', bool(credentials_json))
        return _CLIENT_SINGLETON['client']


def recognition_config(config: StreamConfig, *, diarization: bool = False):
    try:
        encoding = speech.RecognitionConfig.AudioEncoding[config.encoding.upper()]
    except KeyError:
        raise ValueError(f'Unsupported audio encoding for Google Speech: {config.encoding}') from None
    kwargs: Dict[str, Any] = {
        'encoding': encoding,
        'sample_rate_hertz': config.sample_rate_hz,
        'language_code': config.language_code,
        'model': config.model,
        'enable_word_time_offsets': config.enable_word_time_offsets,
    }
    if diarization or config.enable_speaker_diarization:
        kwargs['diarization_config'] = speech.SpeakerDiarizationConfig(
            enable_speaker_diarization=True,
            min_speaker_count=config.min_speaker_count,
            max_speaker_count=config.max_speaker_count,
        )
    return speech.RecognitionConfig(**kwargs)


def grpc_status_code(exc: BaseException) -> Optional[int]:
    """Numeric gRPC status of an api_core or raw grpc error, if any."""
    status = getattr(exc, 'grpc_status_code', None)
    if status is None:
        code = getattr(exc, 'code', None)
        if callable(code):
            try:
                status = code()
            except Exception:
                status = None
    value = getattr(status, 'value', None)
    if isinstance(value, tuple) and value and isinstance(value[0], int):
        return value[0]
    return None


class GoogleSpeechStream(ProviderStream):
    def __init__(self, client, streaming_config, *, session_id: str = ''):
        super().__init__()
        self._client = client
        self._streaming_config = streaming_config
        self._requests: 'queue.Queue[Optional[bytes]]' = queue.Queue()
        self._ended = False
        self._thread = threading.Thread(target=self._consume, name=f'google-stream-{session_id}', daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _request_iter(self) -> Iterator[Any]:
        while True:
            chunk = self._requests.get()
            if chunk is None:
                return
            yield speech.StreamingRecognizeRequest(audio_content=chunk)

    def _consume(self) -> None:
        try:
            responses = self._client.streaming_recognize(
                config=self._streaming_config,
                requests=self._request_iter(),
            )
            for response in responses:
                payload = speech.StreamingRecognizeResponse.to_dict(response)
                results = payload.get('results') or []
                if results:
                    self._post_threadsafe(self._deliver_result, results[0])
        except Exception as exc:
            if self._ended:
                log.debug('Google stream ended with %s after close', type(exc).__name__)
                return
            error = ProviderStreamError(str(exc), code=grpc_status_code(exc))
            self._post_threadsafe(self._deliver_error, error)
            return
        if not self._ended:
            # Responses ran out without close(): nothing reads the request queue any more.
            self._closed = True
            self._post_threadsafe(self._deliver_error, ProviderStreamError('stream ended by provider'))

    def write(self, chunk: bytes) -> None:
        if self._closed:
            raise ProviderStreamError('Google stream is closed')
        self._requests.put_nowait(bytes(chunk))

    def close(self) -> None:
        if self._ended:
            return
        self._ended = True
        self._closed = True
        # Half-close: the request iterator returns and the call winds down.
        self._requests.put_nowait(None)


class GoogleSpeechProvider:
    """Opens Google streaming recognition generations."""

    @classmethod
    def is_available(cls) -> bool:
        return speech is not None

    def __init__(self, credentials_json: Optional[str] = None):
        self._credentials_json = credentials_json

    async def open_stream(self, session_id: str, config: StreamConfig) -> GoogleSpeechStream:
        client = await asyncio.to_thread(_load_client, self._credentials_json)
        streaming_config = speech.StreamingRecognitionConfig(
            config=recognition_config(config),
            interim_results=config.interim_results,
        )
        stream = GoogleSpeechStream(client, streaming_config, session_id=session_id)
        stream.start()
        log.info(
            'Opened Google stream session_id=%s encoding=%s sample_rate=%s language=%s',
            session_id, config.encoding, config.sample_rate_hz, config.language_code,
        )
        return stream


class GoogleBatchRecognizer:
    """Offline diarized recognition of a complete recording."""

    @classmethod
    def is_available(cls) -> bool:
        return speech is not None

    def __init__(self, credentials_json: Optional[str] = None):
        self._credentials_json = credentials_json

    def recognize(self, audio: bytes, config: StreamConfig, *, timeout: float = 600.0) -> List[Dict[str, Any]]:
        client = _load_client(self._credentials_json)
        operation = client.long_running_recognize(
            config=recognition_config(config, diarization=True),
            audio=speech.RecognitionAudio(content=audio),
        )
        log.info('Batch recognition submitted (%d bytes)', len(audio))
        response = operation.result(timeout=timeout)
        return [speech.SpeechRecognitionResult.to_dict(result) for result in response.results]
