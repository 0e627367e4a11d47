from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Protocol

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamConfig:
    """How the provider should interpret a run's audio.

    Set once per recognition run and reused verbatim for every stream
    generation opened within that run.
    """

    encoding: str = 'WEBM_OPUS'
    sample_rate_hz: int = 48000
    language_code: str = 'vi-VN'
    model: str = 'latest_long'
    enable_word_time_offsets: bool = True
    interim_results: bool = True
    enable_speaker_diarization: bool = False
    min_speaker_count: int = 1
    max_speaker_count: int = 5

    @classmethod
    def from_config(cls, settings: Mapping[str, Any]) -> 'StreamConfig':
        """Default stream definition from app config (``STT_*`` keys)."""
        defaults = cls()
        return cls(
            encoding=str(settings.get('STT_ENCODING', defaults.encoding)),
            sample_rate_hz=int(settings.get('STT_SAMPLE_RATE_HZ', defaults.sample_rate_hz)),
            language_code=str(settings.get('STT_LANGUAGE_CODE', defaults.language_code)),
            model=str(settings.get('STT_MODEL', defaults.model)),
            enable_word_time_offsets=bool(settings.get('STT_WORD_TIME_OFFSETS', defaults.enable_word_time_offsets)),
            min_speaker_count=int(settings.get('BATCH_MIN_SPEAKERS', defaults.min_speaker_count)),
            max_speaker_count=int(settings.get('BATCH_MAX_SPEAKERS', defaults.max_speaker_count)),
        )


@dataclass
class WordTiming:
    word: str
    start: float = 0.0
    end: float = 0.0


@dataclass
class TranscriptEvent:
    text: str
    is_final: bool = False
    speaker: int = 0
    words: List[WordTiming] = field(default_factory=list)

    def to_payload(self) -> dict:
        return {
            'text': self.text,
            'isFinal': self.is_final,
            'speaker': self.speaker,
            'words': [{'word': w.word, 'start': w.start, 'end': w.end} for w in self.words],
        }


class ProviderStreamError(RuntimeError):
    """Failure reported by (or while talking to) a provider stream."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class StreamObserver(Protocol):
    def on_result(self, result: Mapping[str, Any]) -> None: ...
    def on_error(self, error: ProviderStreamError) -> None: ...


class ProviderStream:
    """One generation of recognition against the provider.

    Subclasses push results and errors through ``_deliver_result`` /
    ``_deliver_error``, which must run on the event loop that owns the
    stream. Delivery goes to whatever observer is attached at that moment,
    so after ``detach()`` the stream can no longer reach its former owner.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()
        self._observer: Optional[StreamObserver] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def attach(self, observer: StreamObserver) -> None:
        self._observer = observer

    def detach(self) -> None:
        self._observer = None

    def write(self, chunk: bytes) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    # Thread -> loop bridge for providers that consume responses off-loop
    def _post_threadsafe(self, callback, *args) -> None:
        if self._loop.is_closed():
            log.debug('Dropping provider callback; event loop already closed')
            return
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            log.debug('Dropping provider callback; event loop shut down', exc_info=True)

    def _deliver_result(self, result: Mapping[str, Any]) -> None:
        observer = self._observer
        if observer is not None:
            observer.on_result(result)

    def _deliver_error(self, error: ProviderStreamError) -> None:
        self._closed = True
        observer = self._observer
        if observer is not None:
            observer.on_error(error)


class TranscriptionProvider(Protocol):
    """Opens provider streams.

    ``open_stream`` is the only suspension point of a stream swap; an
    exception raised from it is an open failure.
    """

    async def open_stream(self, session_id: str, config: StreamConfig) -> ProviderStream: ...
