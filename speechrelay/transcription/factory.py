"""Provider factory for transcription services.

Centralizes the logic of selecting and instantiating a concrete provider
based on configuration.

Usage:
    provider, name = create_provider(current_app.config['STT_PROVIDER'], current_app.config)

Returned name is a normalized symbolic identifier suitable for logging and
for reporting to clients.
"""
from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Tuple

from .aws_transcribe import AwsTranscribeStreamingProvider
from .google_speech import GoogleBatchRecognizer, GoogleSpeechProvider
from .provider import TranscriptionProvider

log = logging.getLogger(__name__)

_ALIAS_MAP = {
    'google': 'google',
    'google_speech': 'google',
    'gcp': 'google',
    'aws': 'aws_transcribe',
    'aws_transcribe': 'aws_transcribe',
    'amazon': 'aws_transcribe',
}


class ProviderUnavailableError(RuntimeError):
    pass


def normalize_provider_name(raw_name: Optional[str]) -> str:
    name = (raw_name or 'google').strip().lower()
    return _ALIAS_MAP.get(name, name)


def create_provider(raw_name: Optional[str], settings: Optional[Mapping[str, Any]] = None) -> Tuple[TranscriptionProvider, str]:
    settings = settings or {}
    name = normalize_provider_name(raw_name)
    if name == 'google':
        if not GoogleSpeechProvider.is_available():
            raise ProviderUnavailableError('Google Speech unavailable: pip install google-cloud-speech.')
        log.debug('Selected transcription provider: google')
        return GoogleSpeechProvider(settings.get('GOOGLE_KEY')), 'google'
    if name == 'aws_transcribe':
        if not AwsTranscribeStreamingProvider.is_available():
            raise ProviderUnavailableError('AWS Transcribe unavailable: install amazon-transcribe and configure credentials.')
        region = settings.get('AWS_REGION')
        log.debug('Selected transcription provider: aws_transcribe (region=%s)', region)
        return AwsTranscribeStreamingProvider(region=region), 'aws_transcribe'
    raise ProviderUnavailableError(f'Unknown transcription provider: {name}')


def create_batch_recognizer(raw_name: Optional[str], settings: Optional[Mapping[str, Any]] = None) -> GoogleBatchRecognizer:
    settings = settings or {}
    name = normalize_provider_name(raw_name)
    if name != 'google':
        raise ProviderUnavailableError(f'Batch analysis is not supported by provider: {name}')
    if not GoogleBatchRecognizer.is_available():
        raise ProviderUnavailableError('Google Speech unavailable: pip install google-cloud-speech.')
    return GoogleBatchRecognizer(settings.get('GOOGLE_KEY'))
