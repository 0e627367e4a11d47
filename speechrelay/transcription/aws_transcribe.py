"""Amazon Transcribe streaming provider.

Alternate backend behind the same ProviderStream contract. The SDK is
fully async, so each generation runs two tasks on the session loop: a
feeder draining an audio queue into ``send_audio_event`` and a consumer
driving the SDK's result handler. Item timestamps arrive as float seconds;
speaker labels (``spk_0``, ``spk_1``...) become tags 1, 2... so that 0
keeps meaning "unattributed".

Credentials and region come from the standard AWS environment.
"""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

try:
    from amazon_transcribe.client import TranscribeStreamingClient
    from amazon_transcribe.handlers import TranscriptResultStreamHandler
except Exception:  # pragma: no cover - optional dependency
    TranscribeStreamingClient = None  # type: ignore
    TranscriptResultStreamHandler = object  # type: ignore

from .provider import ProviderStream, ProviderStreamError, StreamConfig

log = logging.getLogger(__name__)

_MEDIA_ENCODINGS = {
    'LINEAR16': 'pcm',
    'PCM': 'pcm',
    'OGG_OPUS': 'ogg-opus',
    'FLAC': 'flac',
}


def speaker_tag(label: Optional[str]) -> int:
    if not label:
        return 0
    try:
        return int(str(label).rsplit('_', 1)[-1]) + 1
    except ValueError:
        return 0


def result_to_dict(result: Any) -> Optional[Dict[str, Any]]:
    if not getattr(result, 'alternatives', None):
        return None
    alt = result.alternatives[0]
    words: List[Dict[str, Any]] = []
    for item in getattr(alt, 'items', None) or []:
        if getattr(item, 'item_type', getattr(item, 'type', 'pronunciation')) != 'pronunciation':
            continue
        words.append({
            'word': getattr(item, 'content', ''),
            'start_time': getattr(item, 'start_time', None),
            'end_time': getattr(item, 'end_time', None),
            'speaker_tag': speaker_tag(getattr(item, 'speaker', None)),
        })
    return {
        'is_final': not getattr(result, 'is_partial', False),
        'alternatives': [{'transcript': alt.transcript, 'words': words}],
    }


class _AwsHandler(TranscriptResultStreamHandler):  # type: ignore[misc]
    def __init__(self, output_stream, stream: 'AwsTranscribeStream'):
        super().__init__(output_stream)
        self._stream = stream

    async def handle_transcript_event(self, event):  # type: ignore[override]
        for result in event.transcript.results:
            payload = result_to_dict(result)
            if payload is not None:
                self._stream._deliver_result(payload)


class AwsTranscribeStream(ProviderStream):
    def __init__(self, aws_stream):
        super().__init__()
        self._aws_stream = aws_stream
        self._audio: 'asyncio.Queue[Optional[bytes]]' = asyncio.Queue()
        self._ended = False
        handler = _AwsHandler(aws_stream.output_stream, self)
        self._consumer_task = asyncio.create_task(self._consume(handler))
        self._feeder_task = asyncio.create_task(self._feed())

    async def _consume(self, handler: _AwsHandler) -> None:
        try:
            await handler.handle_events()
        except Exception as exc:
            self._fail(exc)

    async def _feed(self) -> None:
        try:
            while True:
                chunk = await self._audio.get()
                if chunk is None:
                    break
                await self._aws_stream.input_stream.send_audio_event(audio_chunk=chunk)
            await self._aws_stream.input_stream.end_stream()
        except Exception as exc:
            self._fail(exc)

    def _fail(self, exc: Exception) -> None:
        if self._ended or self._closed:
            log.debug('Amazon Transcribe stream ended with %s after close', type(exc).__name__)
            return
        self._deliver_error(ProviderStreamError(str(exc)))

    def write(self, chunk: bytes) -> None:
        if self._closed:
            raise ProviderStreamError('Amazon Transcribe stream is closed')
        self._audio.put_nowait(bytes(chunk))

    def close(self) -> None:
        if self._ended:
            return
        self._ended = True
        self._closed = True
        self._audio.put_nowait(None)


class AwsTranscribeStreamingProvider:
    """Opens Amazon Transcribe streaming generations.

    The SDK is optional; call ``is_available()`` before constructing in code
    paths where the dependency may not be installed.
    """

    @classmethod
    def is_available(cls) -> bool:
        return TranscribeStreamingClient is not None

    def __init__(self, region: Optional[str] = None):
        self._region = region or os.getenv('AWS_REGION', 'us-east-1')

    async def open_stream(self, session_id: str, config: StreamConfig) -> AwsTranscribeStream:
        if TranscribeStreamingClient is None:
            raise RuntimeError(
                'Amazon Transcribe SDK not installed. Install with: '
                'pip install amazon-transcribe --upgrade'
            )
        media_encoding = _MEDIA_ENCODINGS.get(config.encoding.upper())
        if media_encoding is None:
            raise ValueError(f'Amazon Transcribe cannot decode {config.encoding} audio')
        client = TranscribeStreamingClient(region=self._region)
        kwargs: Dict[str, Any] = {
            'language_code': config.language_code,
            'media_sample_rate_hz': config.sample_rate_hz,
            'media_encoding': media_encoding,
        }
        if config.enable_speaker_diarization:
            kwargs['show_speaker_label'] = True
        aws_stream = await client.start_stream_transcription(**kwargs)
        log.info(
            'Opened Amazon Transcribe stream session_id=%s region=%s encoding=%s',
            session_id, self._region, media_encoding,
        )
        return AwsTranscribeStream(aws_stream)
