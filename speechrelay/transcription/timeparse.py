"""Timestamp normalisation for provider word offsets.

The provider does not encode word offsets uniformly across response
variants. Seen in the wild:

  {"seconds": "2", "nanos": 500000000}   structured Duration (JSON / protobuf)
  1.5                                   plain seconds
  "1.500s"                              Duration JSON string form
  datetime.timedelta                    proto-plus Duration attribute

All of them collapse to float seconds; anything else is 0.0 so a single
odd field never rejects the whole result.
"""
from __future__ import annotations

from datetime import timedelta
from numbers import Real
from typing import Any, Mapping

_NANOS_PER_SECOND = 1e9


def _structured(seconds: Any, nanos: Any) -> float:
    try:
        whole = int(seconds or 0)
        frac = int(nanos or 0)
    except (TypeError, ValueError):
        return 0.0
    return whole + frac / _NANOS_PER_SECOND


def parse_time(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, Real):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('s'):
            text = text[:-1]
        try:
            return float(text)
        except ValueError:
            return 0.0
    if isinstance(value, Mapping):
        if 'seconds' not in value and 'nanos' not in value:
            return 0.0
        return _structured(value.get('seconds'), value.get('nanos'))
    if hasattr(value, 'seconds') or hasattr(value, 'nanos'):
        return _structured(getattr(value, 'seconds', 0), getattr(value, 'nanos', 0))
    return 0.0
