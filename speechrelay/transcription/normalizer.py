"""Raw provider result -> TranscriptEvent."""
from __future__ import annotations

from typing import Any, List, Mapping, Optional, Sequence

from .provider import TranscriptEvent, WordTiming
from .timeparse import parse_time


def _field(obj: Mapping[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    if snake in obj:
        return obj[snake]
    return obj.get(camel, default)


def _speaker_tag(word: Mapping[str, Any]) -> int:
    try:
        return int(_field(word, 'speaker_tag', 'speakerTag', 0) or 0)
    except (TypeError, ValueError):
        return 0


def dominant_speaker(words: Sequence[Mapping[str, Any]]) -> int:
    """Return the last non-zero speaker tag in ``words`` (0 if none).

    Scans from the end: a turn's most recent attribution wins over the
    first word's, which may predate a mid-utterance speaker change.
    """
    for word in reversed(words):
        tag = _speaker_tag(word)
        if tag:
            return tag
    return 0


def normalize_result(raw: Optional[Mapping[str, Any]], *, word_timing: bool = True) -> Optional[TranscriptEvent]:
    """Build a TranscriptEvent from one raw result, or None if it is unusable.

    With ``word_timing`` off the event carries no words, even when the
    provider reported them; speaker attribution still uses them.
    """
    if not isinstance(raw, Mapping):
        return None
    alternatives = raw.get('alternatives') or []
    if not alternatives or not isinstance(alternatives[0], Mapping):
        return None
    alt = alternatives[0]
    text = alt.get('transcript')
    if not isinstance(text, str):
        return None
    is_final = bool(_field(raw, 'is_final', 'isFinal', False))

    raw_words: List[Mapping[str, Any]] = [w for w in (alt.get('words') or []) if isinstance(w, Mapping)]
    words = [
        WordTiming(
            word=str(w.get('word') or ''),
            start=parse_time(_field(w, 'start_time', 'startTime')),
            end=parse_time(_field(w, 'end_time', 'endTime')),
        )
        for w in raw_words
    ] if word_timing else []
    speaker = dominant_speaker(raw_words) if is_final and raw_words else 0
    return TranscriptEvent(text=text, is_final=is_final, speaker=speaker, words=words)
