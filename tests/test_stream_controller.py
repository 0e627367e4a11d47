import asyncio

import pytest

from speechrelay.streaming.controller import (
    ControllerState,
    ErrorKind,
    InvalidStateError,
    StreamController,
    classify_error,
)
from speechrelay.streaming.scheduler import RestartState
from speechrelay.transcription.provider import ProviderStreamError, StreamConfig
from tests.conftest import FakeProvider, result, settle

HEADER = b'\x1aE\xdf\xa3-webm-header'


def make_controller(provider, listener, **overrides):
    options = dict(
        session_id='sid-1',
        guard_seconds=60.0,
        expiry_restart_delay=0.0,
        error_restart_delay=0.0,
        open_retry_delay=0.0,
        max_open_attempts=3,
    )
    options.update(overrides)
    return StreamController(provider, listener, **options)


def test_classify_error():
    assert classify_error(ProviderStreamError('anything', code=11)) is ErrorKind.EXPIRED
    assert classify_error(ProviderStreamError('Exceeded maximum allowed stream duration of 305 seconds.')) is ErrorKind.EXPIRED
    assert classify_error(ProviderStreamError('connection reset', code=14)) is ErrorKind.TRANSIENT
    assert classify_error(ConnectionError('boom')) is ErrorKind.TRANSIENT


def test_from_config_reads_lifecycle_settings(provider, listener):
    controller = StreamController.from_config(provider, listener, {
        'STREAM_GUARD_SECONDS': '120',
        'STREAM_ERROR_RESTART_DELAY_SECONDS': 0.5,
        'STREAM_MAX_OPEN_ATTEMPTS': 2,
    }, session_id='abc')
    assert controller.guard_seconds == 120.0
    assert controller.error_restart_delay == 0.5
    assert controller.expiry_restart_delay == 0.0
    assert controller.open_retry_delay == 2.0
    assert controller.max_open_attempts == 2
    assert controller.stable_seconds == 10.0
    assert controller.session_id == 'abc'


@pytest.mark.asyncio
async def test_start_opens_stream_and_signals_ready(provider, listener, stream_config):
    controller = make_controller(provider, listener)
    await controller.start(stream_config)

    assert controller.state is ControllerState.STREAMING
    assert provider.open_calls == 1
    assert provider.configs == [stream_config]
    assert controller.active_stream is provider.streams[0]
    assert controller.scheduler.guard_armed
    assert listener.ready == 1


@pytest.mark.asyncio
async def test_writes_before_start_are_dropped(provider, listener):
    controller = make_controller(provider, listener)
    controller.write(HEADER)

    assert controller.header.is_empty()
    assert provider.open_calls == 0
    assert controller.state is ControllerState.IDLE


@pytest.mark.asyncio
async def test_first_chunk_becomes_header_and_is_forwarded(provider, listener, stream_config):
    controller = make_controller(provider, listener)
    await controller.start(stream_config)

    controller.write(b'')
    controller.write(HEADER)
    controller.write(b'chunk-1')

    assert controller.header.data == HEADER
    assert provider.streams[0].writes == [HEADER, b'chunk-1']


@pytest.mark.asyncio
async def test_double_start_is_rejected(provider, listener, stream_config):
    controller = make_controller(provider, listener)
    await controller.start(stream_config)

    with pytest.raises(InvalidStateError):
        await controller.start(stream_config)
    assert provider.open_calls == 1


@pytest.mark.asyncio
async def test_expiry_swaps_stream_and_reprimes_header(provider, listener, stream_config):
    controller = make_controller(provider, listener)
    await controller.start(stream_config)
    controller.write(HEADER)
    for i in range(10):
        controller.write(f'chunk-{i}'.encode())
    first = provider.streams[0]

    first.emit_error('Exceeded maximum allowed stream duration of 305 seconds.', code=11)
    await settle()

    assert provider.open_calls == 2
    assert len(provider.streams) == 2
    second = provider.streams[1]
    assert controller.active_stream is second
    assert controller.state is ControllerState.STREAMING
    assert first.observer is None
    assert first.close_calls == 1
    assert second.writes == [HEADER]
    assert listener.ready == 1

    controller.write(b'chunk-10')
    assert second.writes == [HEADER, b'chunk-10']

    second.emit_result(result('xin chao ban', final=True, words=[
        {'word': 'xin', 'start_time': '0.200s', 'end_time': '0.400s', 'speaker_tag': 1},
        {'word': 'chao', 'start_time': {'seconds': '0', 'nanos': 500000000}, 'end_time': '0.800s', 'speaker_tag': 1},
        {'word': 'ban', 'start_time': 0.9, 'end_time': 1.2, 'speaker_tag': 1},
    ]))
    assert len(listener.events) == 1
    event = listener.events[0]
    assert event.text == 'xin chao ban'
    assert event.speaker == 1
    starts = [w.start for w in event.words]
    assert starts == sorted(starts)

    stats = controller.stats()
    assert stats['generations'] == 2
    assert stats['restarts'] == 1


@pytest.mark.asyncio
async def test_duplicate_expiry_and_error_collapse_to_one_restart(provider, listener, stream_config):
    controller = make_controller(provider, listener)
    await controller.start(stream_config)
    controller.write(HEADER)
    first = provider.streams[0]

    first.emit_error('stream duration exceeded', code=11)
    first.emit_error('stream duration exceeded', code=11)
    first.emit_error('socket closed', code=14)
    assert controller.restart_state is RestartState.PENDING_RESTART
    await settle()

    assert provider.open_calls == 2
    assert controller.restart_state is RestartState.IDLE


@pytest.mark.asyncio
async def test_old_stream_cannot_reach_controller_after_swap(provider, listener, stream_config):
    controller = make_controller(provider, listener)
    await controller.start(stream_config)
    first = provider.streams[0]

    first.emit_error('unavailable', code=14)
    await settle()
    assert controller.active_stream is provider.streams[1]

    first.emit_result(result('stale', final=True))
    first.emit_error('late failure', code=14)
    await settle()

    assert provider.open_calls == 2
    assert listener.events == []
    assert controller.active_stream is provider.streams[1]


@pytest.mark.asyncio
async def test_audio_during_swap_is_dropped_not_buffered(listener, stream_config):
    gate = asyncio.Event()
    gate.set()
    provider = FakeProvider(gate=gate)
    controller = make_controller(provider, listener)
    await controller.start(stream_config)
    controller.write(HEADER)

    gate.clear()
    provider.streams[0].emit_error('duration', code=11)
    await settle()
    assert controller.state is ControllerState.RESTARTING
    controller.write(b'lost-1')
    controller.write(b'lost-2')
    assert controller.chunks_dropped == 2

    gate.set()
    await settle()
    assert provider.streams[1].writes == [HEADER]
    controller.write(b'kept')
    assert provider.streams[1].writes == [HEADER, b'kept']


@pytest.mark.asyncio
async def test_duration_guard_swaps_before_provider_limit(provider, listener, stream_config):
    controller = make_controller(provider, listener, guard_seconds=0.05)
    await controller.start(stream_config)
    controller.write(HEADER)

    await settle(0.08)

    assert controller.generation >= 2
    assert provider.streams[0].close_calls == 1
    assert provider.streams[1].writes[0] == HEADER
    assert listener.errors == []


@pytest.mark.asyncio
async def test_open_failure_is_retried(listener, stream_config):
    provider = FakeProvider(fail_times=2)
    controller = make_controller(provider, listener, max_open_attempts=5)
    await controller.start(stream_config)
    await settle(0.05)

    assert provider.open_calls == 3
    assert controller.state is ControllerState.STREAMING
    assert listener.ready == 1
    assert listener.errors == []

    # The counter only resets once the new stream proves it works.
    assert controller.open_failures == 2
    provider.streams[0].emit_result(result('ok'))
    assert controller.open_failures == 0


@pytest.mark.asyncio
async def test_open_failures_give_up_after_cap(listener, stream_config):
    provider = FakeProvider(fail_times=100)
    controller = make_controller(provider, listener, max_open_attempts=3)
    await controller.start(stream_config)
    await settle(0.05)

    assert provider.open_calls == 3
    assert controller.state is ControllerState.STOPPED
    assert len(listener.errors) == 1
    assert listener.errors[0].startswith('Unable to open recognition stream')

    await settle(0.03)
    assert provider.open_calls == 3


@pytest.mark.asyncio
async def test_stop_during_open_closes_late_stream(listener, stream_config):
    gate = asyncio.Event()
    provider = FakeProvider(gate=gate)
    controller = make_controller(provider, listener)

    starting = asyncio.ensure_future(controller.start(stream_config))
    await settle()
    assert controller.state is ControllerState.STARTING
    controller.stop()
    gate.set()
    await starting

    assert controller.state is ControllerState.STOPPED
    assert controller.active_stream is None
    late = provider.streams[0]
    assert late.close_calls == 1
    assert late.observer is None
    assert listener.ready == 0


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_clears_run_state(provider, listener, stream_config):
    controller = make_controller(provider, listener)
    await controller.start(stream_config)
    controller.write(HEADER)
    stream = provider.streams[0]

    controller.stop()
    controller.stop()

    assert controller.state is ControllerState.STOPPED
    assert controller.header.is_empty()
    assert controller.active_stream is None
    assert not controller.scheduler.guard_armed
    assert stream.close_calls == 1
    assert stream.observer is None

    controller.write(b'after-stop')
    assert stream.writes == [HEADER]


@pytest.mark.asyncio
async def test_new_run_captures_its_own_header(provider, listener, stream_config):
    controller = make_controller(provider, listener)
    await controller.start(stream_config)
    controller.write(b'header-run-1')
    controller.stop()

    await controller.start(stream_config)
    controller.write(b'header-run-2')
    provider.streams[1].emit_error('duration', code=11)
    await settle()

    assert controller.header.data == b'header-run-2'
    assert provider.streams[2].writes == [b'header-run-2']
    assert listener.ready == 2


@pytest.mark.asyncio
async def test_malformed_results_are_dropped(provider, listener, stream_config):
    controller = make_controller(provider, listener)
    await controller.start(stream_config)
    stream = provider.streams[0]

    stream.emit_result({'alternatives': []})
    stream.emit_result({'is_final': True})
    stream.emit_result(result('ok'))

    assert [e.text for e in listener.events] == ['ok']
    assert listener.events[0].is_final is False
    assert controller.state is ControllerState.STREAMING


class RejectingProvider(FakeProvider):
    """Accepts every open, then the stream fails before any result."""

    async def open_stream(self, session_id, config):
        stream = await super().open_stream(session_id, config)
        asyncio.get_running_loop().call_soon(
            stream.emit_error, '16 UNAUTHENTICATED: invalid authentication credentials', 16,
        )
        return stream


@pytest.mark.asyncio
async def test_streams_rejected_after_open_count_towards_the_cap(listener, stream_config):
    provider = RejectingProvider()
    controller = make_controller(provider, listener, max_open_attempts=3)
    await controller.start(stream_config)
    await settle(0.05)

    assert provider.open_calls == 3
    assert controller.state is ControllerState.STOPPED
    assert len(listener.errors) == 1
    assert 'invalid authentication credentials' in listener.errors[0]

    await settle(0.03)
    assert provider.open_calls == 3


@pytest.mark.asyncio
async def test_rejected_stream_is_retried_then_recovers(provider, listener, stream_config):
    controller = make_controller(provider, listener, max_open_attempts=3)
    await controller.start(stream_config)
    provider.streams[0].emit_error('permission denied', code=7)
    await settle()

    assert controller.open_failures == 1
    second = provider.streams[1]
    second.emit_result(result('xin chao'))
    assert controller.open_failures == 0
    assert controller.state is ControllerState.STREAMING
    assert listener.errors == []


@pytest.mark.asyncio
async def test_error_after_stable_window_is_an_ordinary_restart(provider, listener, stream_config):
    controller = make_controller(provider, listener, max_open_attempts=1, stable_seconds=0.0)
    await controller.start(stream_config)
    provider.streams[0].emit_error('connection reset', code=14)
    await settle()

    assert provider.open_calls == 2
    assert controller.open_failures == 0
    assert controller.state is ControllerState.STREAMING
    assert listener.errors == []


@pytest.mark.asyncio
async def test_word_timings_withheld_when_disabled(provider, listener):
    controller = make_controller(provider, listener)
    await controller.start(StreamConfig(enable_word_time_offsets=False))
    provider.streams[0].emit_result(result('hello', final=True, words=[
        {'word': 'hello', 'start_time': 0.1, 'end_time': 0.4, 'speaker_tag': 2},
    ]))

    event = listener.events[0]
    assert event.words == []
    assert event.speaker == 2
