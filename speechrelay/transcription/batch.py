"""Batch (offline) analysis of a complete recording.

Stateless request/response: the recording is sent in one call and the
diarized result is flattened into speaker-grouped text, e.g.

    [Speaker 1]: xin chao
    [Speaker 2]: chao ban

No retries; the client decides whether to resubmit.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Iterable, List, Mapping, Protocol

from .provider import StreamConfig

log = logging.getLogger(__name__)


class BatchTranscriptionError(RuntimeError):
    pass


class BatchRecognizer(Protocol):
    def recognize(self, audio: bytes, config: StreamConfig, *, timeout: float = ...) -> List[Mapping[str, Any]]: ...


def _speaker(word: Mapping[str, Any]) -> int:
    tag = word.get('speaker_tag', word.get('speakerTag', 0))
    try:
        return int(tag or 0)
    except (TypeError, ValueError):
        return 0


def group_by_speaker(results: Iterable[Mapping[str, Any]]) -> str:
    chunks: List[str] = []
    for result in results:
        alternatives = result.get('alternatives') or []
        words = (alternatives[0].get('words') or []) if alternatives else []
        if not words:
            chunks.append('')
            continue
        text = ''
        current = -1
        for word in words:
            tag = _speaker(word)
            if tag != current:
                text += f"\n[Speaker {tag}]: {word.get('word', '')}"
                current = tag
            else:
                text += f" {word.get('word', '')}"
        chunks.append(text)
    return '\n'.join(chunks)


def run_batch(recognizer: BatchRecognizer, audio: bytes, config: StreamConfig, *, timeout: float = 600.0) -> str:
    if not audio:
        raise BatchTranscriptionError('empty audio buffer')
    batch_config = replace(config, enable_speaker_diarization=True)
    log.info('Batch analysis requested: %d bytes', len(audio))
    try:
        results = recognizer.recognize(audio, batch_config, timeout=timeout)
    except Exception as exc:
        raise BatchTranscriptionError(str(exc)) from exc
    text = group_by_speaker(results)
    log.info('Batch analysis complete: %d results', len(results))
    return text
