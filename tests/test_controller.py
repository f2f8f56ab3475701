import asyncio
import random

import pytest

from engine.errors import DeviceError, QueueClosed
from fakes import RecordingOutput
from engine.types import AudioMetadata
from playback.commands import FastForward, Pause, Play, PlaybackState, Resume, Stop
from playback.controller import PlaybackController

A = Play(b"\x01\x00" * 8, AudioMetadata(text="first"))
B = Play(b"\x02\x00" * 8, AudioMetadata(text="second"))


async def apply(controller, *commands):
    for command in commands:
        await controller.send(command)
    await controller.join()


@pytest.mark.asyncio
async def test_starts_idle(controller, output):
    assert controller.state == PlaybackState.IDLE
    assert output.calls == []


@pytest.mark.asyncio
async def test_play_starts_rendering(controller, output):
    await apply(controller, A)
    assert controller.state == PlaybackState.PLAYING
    assert output.started == [A.audio]


@pytest.mark.asyncio
async def test_pause_fast_forward_resume_stop_scenario(controller, output):
    await apply(controller, A, Pause(), FastForward(), Resume(), Stop())

    assert controller.state == PlaybackState.IDLE
    assert output.calls == ["start", "pause", "skip", "resume", "stop"]
    assert output.calls.count("stop") == 1
    assert output.position == 2.0


@pytest.mark.asyncio
async def test_pause_while_idle_touches_nothing(controller, output):
    await apply(controller, Pause())
    assert controller.state == PlaybackState.IDLE
    assert output.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("command", [Resume(), FastForward(), Stop()])
async def test_other_commands_while_idle_are_noops(controller, output, command):
    await apply(controller, command)
    assert controller.state == PlaybackState.IDLE
    assert output.calls == []


@pytest.mark.asyncio
async def test_pause_twice_and_resume_while_playing_are_ignored(controller, output):
    await apply(controller, A, Resume(), Pause(), Pause())
    assert controller.state == PlaybackState.PAUSED
    assert output.calls == ["start", "pause"]


@pytest.mark.asyncio
@pytest.mark.parametrize("prefix", [[], [A], [A, Pause()]], ids=["idle", "playing", "paused"])
async def test_stop_from_any_state_is_idempotent(controller, output, prefix):
    await apply(controller, *prefix, Stop())
    once = list(output.calls)
    assert controller.state == PlaybackState.IDLE

    await apply(controller, Stop())
    assert controller.state == PlaybackState.IDLE
    assert output.calls == once


@pytest.mark.asyncio
async def test_new_play_preempts_current_stream(controller, output):
    await apply(controller, A, B)

    assert output.calls == ["start", "stop", "start"]
    assert output.active == B.audio
    assert output.overlaps == 0
    assert controller.state == PlaybackState.PLAYING


@pytest.mark.asyncio
async def test_play_while_paused_replaces_stream(controller, output):
    await apply(controller, A, Pause(), B)
    assert output.calls == ["start", "pause", "stop", "start"]
    assert controller.state == PlaybackState.PLAYING


@pytest.mark.asyncio
async def test_completion_returns_to_idle_without_a_command(controller, output):
    await apply(controller, A)
    output.finish()
    await controller.join()

    assert controller.state == PlaybackState.IDLE
    assert output.calls == ["start", "stop"]


@pytest.mark.asyncio
async def test_completion_of_preempted_stream_is_ignored(controller, output):
    await apply(controller, A, B)
    first_done = output.callbacks[0]
    first_done(None)
    await controller.join()

    assert controller.state == PlaybackState.PLAYING
    assert output.active == B.audio


@pytest.mark.asyncio
async def test_completion_after_stop_is_ignored(controller, output):
    await apply(controller, A, Stop())
    output.finish()
    await controller.join()
    assert controller.state == PlaybackState.IDLE
    assert output.calls == ["start", "stop"]


@pytest.mark.asyncio
async def test_device_failure_mid_stream_forces_idle(controller, output):
    await apply(controller, A)
    output.finish(DeviceError("underrun"))
    await controller.join()
    assert controller.state == PlaybackState.IDLE

    await apply(controller, B)
    assert controller.state == PlaybackState.PLAYING
    assert output.started == [A.audio, B.audio]


@pytest.mark.asyncio
async def test_device_failure_on_start_keeps_loop_alive(controller, output):
    output.fail_start = True
    await apply(controller, A)
    assert controller.state == PlaybackState.IDLE

    output.fail_start = False
    await apply(controller, Pause(), B)
    assert controller.state == PlaybackState.PLAYING
    assert output.started == [B.audio]


@pytest.mark.asyncio
async def test_play_after_stop_is_honoured(controller, output):
    await apply(controller, A, Stop(), B)
    assert controller.state == PlaybackState.PLAYING
    assert output.active == B.audio


@pytest.mark.asyncio
async def test_send_rejects_non_commands(controller):
    with pytest.raises(TypeError):
        await controller.send("pause")


@pytest.mark.asyncio
async def test_full_queue_applies_backpressure(output):
    controller = PlaybackController(output, capacity=1)
    await controller.send(A)

    blocked = asyncio.create_task(controller.send(Pause()))
    await asyncio.sleep(0)
    assert not blocked.done()

    controller.start()
    await blocked
    await controller.join()
    assert controller.state == PlaybackState.PAUSED
    await controller.close()


@pytest.mark.asyncio
async def test_close_drains_queue_then_rejects_sends(output):
    controller = PlaybackController(output)
    controller.start()
    await controller.send(A)
    await controller.close()

    assert output.started == [A.audio]
    assert output.calls[-1] == "stop"
    assert controller.state == PlaybackState.IDLE
    with pytest.raises(QueueClosed):
        await controller.send(Stop())


def _expected_state(commands):
    state = PlaybackState.IDLE
    for command in commands:
        if isinstance(command, Play):
            state = PlaybackState.PLAYING
        elif isinstance(command, Pause) and state == PlaybackState.PLAYING:
            state = PlaybackState.PAUSED
        elif isinstance(command, Resume) and state == PlaybackState.PAUSED:
            state = PlaybackState.PLAYING
        elif isinstance(command, Stop):
            state = PlaybackState.IDLE
    return state


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(5))
async def test_random_sequences_follow_transition_table(controller, output, seed):
    rng = random.Random(seed)
    choices = [A, B, Pause(), Resume(), Stop(), FastForward()]
    commands = [rng.choice(choices) for _ in range(200)]

    seen = []
    for command in commands:
        await controller.send(command)
        await controller.join()
        seen.append(command)
        assert controller.state == _expected_state(seen)
        assert controller.state != PlaybackState.STOPPING

    assert output.overlaps == 0


class BrokenOutput(RecordingOutput):
    """Output whose driver raises plain RuntimeErrors while `broken` is set."""

    def __init__(self):
        super().__init__()
        self.broken = False

    def start(self, audio, metadata, on_done):
        if self.broken:
            self.calls.append("start")
            raise RuntimeError("driver bug")
        super().start(audio, metadata, on_done)

    def stop(self):
        super().stop()
        if self.broken:
            raise RuntimeError("driver bug on release")


@pytest.mark.asyncio
async def test_unexpected_error_on_start_and_release_keeps_loop_alive():
    output = BrokenOutput()
    output.broken = True
    controller = PlaybackController(output)
    task = controller.start()

    await apply(controller, A)
    assert not task.done()
    assert controller.state == PlaybackState.IDLE
    assert output.calls == ["start", "stop"]

    output.broken = False
    await apply(controller, B)
    assert controller.state == PlaybackState.PLAYING
    assert output.started == [B.audio]
    await controller.close()


@pytest.mark.asyncio
async def test_unexpected_error_releasing_finished_stream_keeps_loop_alive():
    output = BrokenOutput()
    controller = PlaybackController(output)
    task = controller.start()

    await apply(controller, A)
    output.broken = True
    output.finish()
    await controller.join()
    assert not task.done()
    assert controller.state == PlaybackState.IDLE

    output.broken = False
    await apply(controller, B)
    assert controller.state == PlaybackState.PLAYING
    await controller.close()
