"""Socket.IO gateways. Importing the package registers their handlers."""

from . import transcription_gateway  # noqa: F401

__all__ = ["transcription_gateway"]
