"""Transcription provider abstraction layer.

Concrete providers (Google Cloud Speech, Amazon Transcribe) open
``ProviderStream`` generations and push raw results to an attached
observer. Everything above this package works on ``StreamConfig`` and
normalized ``TranscriptEvent`` values and stays provider-agnostic.
"""

from .provider import (
    ProviderStream,
    ProviderStreamError,
    StreamConfig,
    StreamObserver,
    TranscriptEvent,
    TranscriptionProvider,
    WordTiming,
)
from .normalizer import dominant_speaker, normalize_result
from .timeparse import parse_time

__all__ = [
    'ProviderStream',
    'ProviderStreamError',
    'StreamConfig',
    'StreamObserver',
    'TranscriptEvent',
    'TranscriptionProvider',
    'WordTiming',
    'dominant_speaker',
    'normalize_result',
    'parse_time',
]
