"""Per-session stream lifecycle: header capture, restart gating, hot-swaps."""

from .controller import (
    ControllerState,
    ErrorKind,
    InvalidStateError,
    StreamController,
    classify_error,
)
from .header import HeaderBuffer
from .scheduler import RestartScheduler, RestartState
from .session import StreamSession

__all__ = [
    'ControllerState',
    'ErrorKind',
    'InvalidStateError',
    'StreamController',
    'classify_error',
    'HeaderBuffer',
    'RestartScheduler',
    'RestartState',
    'StreamSession',
]
