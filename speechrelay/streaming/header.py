from __future__ import annotations

from typing import Optional


class HeaderBuffer:
    """Holds the first audio chunk of a run (the container header).

    Write-once until ``clear()``: later captures are ignored so every
    stream generation in the run is primed with the same bytes.
    """

    __slots__ = ('_data',)

    def __init__(self) -> None:
        self._data: Optional[bytes] = None

    @property
    def data(self) -> Optional[bytes]:
        return self._data

    def is_empty(self) -> bool:
        return self._data is None

    def capture(self, chunk: bytes) -> bool:
        if self._data is not None or not chunk:
            return False
        self._data = bytes(chunk)
        return True

    def clear(self) -> None:
        self._data = None
