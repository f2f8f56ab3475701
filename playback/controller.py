"""Playback controller — single owner of the audio output and playback state.

Producers call ``send()`` from any task. One consumer loop (``run()``)
applies commands strictly in the order they were enqueued:

  IDLE --Play--> PLAYING --Pause--> PAUSED --Resume--> PLAYING
  PLAYING --audio ran out--> IDLE
  Stop from any state --> IDLE
  FastForward: PLAYING/PAUSED self-loop

A Play while PLAYING or PAUSED halts the current stream before starting
the new one; audio buffers are never queued behind each other. Device
completion and failure come back through the same queue, tagged with a
stream id so a pre-empted stream cannot end the one that replaced it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from engine.errors import DeviceError, InvalidTransition, QueueClosed

from .commands import FastForward, Pause, Play, PlaybackCommand, PlaybackState, Resume, Stop
from .device import AudioOutput

log = logging.getLogger("playback")

DEFAULT_QUEUE_CAPACITY = 64
DEFAULT_FAST_FORWARD_SECONDS = 5.0

_COMMAND_TYPES = (Play, Pause, Resume, Stop, FastForward)
_SHUTDOWN = object()


@dataclass(frozen=True)
class _StreamEnded:
    stream_id: int
    error: Optional[BaseException] = None


class PlaybackController:
    """Serializes playback commands from many producers onto one AudioOutput."""

    def __init__(
        self,
        output: AudioOutput,
        capacity: int = DEFAULT_QUEUE_CAPACITY,
        fast_forward_seconds: float = DEFAULT_FAST_FORWARD_SECONDS,
    ):
        self.output = output
        self.fast_forward_seconds = fast_forward_seconds
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self._state = PlaybackState.IDLE
        self._stream_id = 0
        self._closed = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._posting: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, output: AudioOutput, settings) -> "PlaybackController":
        return cls(output, settings.queue_capacity, settings.fast_forward_seconds)

    @property
    def state(self) -> PlaybackState:
        """Read-only snapshot for the presentation layer."""
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    # ── Producer side ─────────────────────────────────────────

    async def send(self, command: PlaybackCommand) -> None:
        """Enqueue a command. Waits while the queue is full.

        Raises QueueClosed once close() has been called.
        """
        if not isinstance(command, _COMMAND_TYPES):
            raise TypeError(f"not a playback command: {command!r}")
        if self._closed:
            raise QueueClosed(f"playback queue closed, dropped {type(command).__name__}")
        await self._queue.put(command)

    def start(self) -> asyncio.Task:
        """Spawn the consumer loop on the running event loop."""
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name="playback-controller")
        return self._task

    async def close(self) -> None:
        """Stop accepting commands, let queued ones drain, then end the loop."""
        if not self._closed:
            self._closed = True
            await self._queue.put(_SHUTDOWN)
        if self._task is not None:
            await self._task

    async def join(self) -> None:
        """Wait until every enqueued command and device event has been applied."""
        await asyncio.sleep(0)  # let thread-safe device callbacks land
        while self._posting:
            await asyncio.gather(*list(self._posting), return_exceptions=True)
        await self._queue.join()

    # ── Device events ─────────────────────────────────────────

    def _stream_callback(self, stream_id: int):
        loop = self._loop

        def on_done(error: Optional[BaseException] = None) -> None:
            try:
                loop.call_soon_threadsafe(self._post, _StreamEnded(stream_id, error))
            except RuntimeError:
                log.debug("Event loop closed, dropped end of stream %d", stream_id)

        return on_done

    def _post(self, event: _StreamEnded) -> None:
        if self._closed and (self._task is None or self._task.done()):
            return
        task = asyncio.get_running_loop().create_task(self._queue.put(event))
        self._posting.add(task)
        task.add_done_callback(self._posting.discard)

    # ── Consumer loop ─────────────────────────────────────────

    async def run(self) -> None:
        """Apply queued commands until close(). Never raises for command failures."""
        self._loop = asyncio.get_running_loop()
        log.info("Playback loop started")
        try:
            while True:
                item = await self._queue.get()
                try:
                    if item is _SHUTDOWN:
                        self._halt()
                        break
                    self._apply(item)
                except InvalidTransition as e:
                    log.info("Ignored %s: %s", type(item).__name__, e)
                except DeviceError as e:
                    log.error("Audio device error: %s", e)
                    self._force_idle()
                except Exception:
                    log.exception("Unexpected error applying %r", item)
                    self._force_idle()
                finally:
                    self._queue.task_done()
        finally:
            self._drain()
            log.info("Playback loop stopped")

    def _drain(self) -> None:
        for task in list(self._posting):
            task.cancel()
        while not self._queue.empty():
            item = self._queue.get_nowait()
            self._queue.task_done()
            if not isinstance(item, _StreamEnded) and item is not _SHUTDOWN:
                log.warning("Dropped %s sent after close", type(item).__name__)

    def _apply(self, item) -> None:
        if isinstance(item, _StreamEnded):
            self._on_stream_ended(item)
        elif isinstance(item, Play):
            self._play(item)
        elif isinstance(item, Pause):
            self._require(PlaybackState.PLAYING, "pause")
            self.output.pause()
            self._state = PlaybackState.PAUSED
        elif isinstance(item, Resume):
            self._require(PlaybackState.PAUSED, "resume")
            self.output.resume()
            self._state = PlaybackState.PLAYING
        elif isinstance(item, Stop):
            self._halt()
        elif isinstance(item, FastForward):
            self._require((PlaybackState.PLAYING, PlaybackState.PAUSED), "fast-forward")
            self.output.skip(self.fast_forward_seconds)
        log.debug("%s -> %s", type(item).__name__, self._state.value)

    def _require(self, allowed, action: str) -> None:
        if not isinstance(allowed, tuple):
            allowed = (allowed,)
        if self._state not in allowed:
            raise InvalidTransition(f"cannot {action} while {self._state.value}")

    def _play(self, command: Play) -> None:
        if self._state in (PlaybackState.PLAYING, PlaybackState.PAUSED):
            log.info("Pre-empting current stream %d", self._stream_id)
            self._state = PlaybackState.STOPPING
            self.output.stop()
        self._stream_id += 1
        self.output.start(command.audio, command.metadata, self._stream_callback(self._stream_id))
        self._state = PlaybackState.PLAYING
        log.info("Playing stream %d: %d bytes (%.2fs) %r",
                 self._stream_id, len(command.audio),
                 command.metadata.duration(len(command.audio)), command.metadata.text[:50])

    def _halt(self) -> None:
        """Stop and release the output. No device call when already idle."""
        if self._state == PlaybackState.IDLE:
            return
        self._state = PlaybackState.STOPPING
        self._stream_id += 1
        self.output.stop()
        self._state = PlaybackState.IDLE

    def _force_idle(self) -> None:
        self._stream_id += 1
        self._state = PlaybackState.IDLE
        try:
            self.output.stop()
        except DeviceError as e:
            log.warning("Releasing audio output failed: %s", e)
        except Exception:
            log.exception("Releasing audio output failed")

    def _on_stream_ended(self, event: _StreamEnded) -> None:
        if event.stream_id != self._stream_id or self._state == PlaybackState.IDLE:
            log.debug("Ignoring end of stale stream %d", event.stream_id)
            return
        if event.error is not None:
            log.error("Stream %d failed: %s", event.stream_id, event.error)
            self._force_idle()
            return
        log.info("Stream %d finished", event.stream_id)
        self._state = PlaybackState.IDLE
        self.output.stop()
