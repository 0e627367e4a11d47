"""Shared fakes for controller, session and gateway tests."""
from __future__ import annotations

import asyncio
import threading
import time
from typing import Any, Callable, List, Mapping, Optional

import pytest

from speechrelay.transcription.provider import ProviderStream, ProviderStreamError, StreamConfig


class FakeStream(ProviderStream):
    def __init__(self, index: int):
        super().__init__()
        self.index = index
        self.writes: List[bytes] = []
        self.close_calls = 0

    @property
    def observer(self):
        return self._observer

    def write(self, chunk: bytes) -> None:
        if self._closed:
            raise ProviderStreamError('closed')
        self.writes.append(bytes(chunk))

    def close(self) -> None:
        self.close_calls += 1
        self._closed = True

    # test drivers (call on the owning loop)
    def emit_result(self, result: Mapping[str, Any]) -> None:
        self._deliver_result(result)

    def emit_error(self, message: str, code: Optional[int] = None) -> None:
        self._deliver_error(ProviderStreamError(message, code=code))


class FakeProvider:
    def __init__(self, fail_times: int = 0, gate: Optional[asyncio.Event] = None):
        self.fail_times = fail_times
        self.gate = gate
        self.open_calls = 0
        self.streams: List[FakeStream] = []
        self.configs: List[StreamConfig] = []

    async def open_stream(self, session_id: str, config: StreamConfig) -> FakeStream:
        self.open_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError('provider unreachable')
        stream = FakeStream(len(self.streams))
        self.streams.append(stream)
        self.configs.append(config)
        return stream


class RecordingListener:
    def __init__(self):
        self.ready = 0
        self.events = []
        self.errors: List[str] = []

    def on_ready(self) -> None:
        self.ready += 1

    def on_transcript(self, event) -> None:
        self.events.append(event)

    def on_stream_error(self, message: str) -> None:
        self.errors.append(message)


def result(text: str, *, final: bool = False, words=None) -> dict:
    alt: dict = {'transcript': text}
    if words is not None:
        alt['words'] = words
    return {'is_final': final, 'alternatives': [alt]}


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll from a test thread until predicate() holds."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


async def settle(seconds: float = 0.02) -> None:
    await asyncio.sleep(seconds)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def stream_config():
    return StreamConfig(encoding='WEBM_OPUS', sample_rate_hz=48000, language_code='vi-VN', model='latest_long')
