"""Audio output devices.

The controller drives exactly one AudioOutput. ``start`` begins rendering
asynchronously and reports the end of the stream through ``on_done``:
``on_done(None)`` when the audio ran out, ``on_done(exc)`` when the device
failed. ``on_done`` may be called from the audio thread and is never
called for a stream that was ended with ``stop``.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional

from engine.errors import DeviceError
from engine.types import AudioMetadata

from .pcm_cursor import PcmCursor

log = logging.getLogger("device")

DoneCallback = Callable[[Optional[BaseException]], None]

_DTYPES = {2: "int16", 4: "int32"}


class AudioOutput(ABC):
    """Abstract base for the single audio sink owned by the controller."""

    @abstractmethod
    def start(self, audio: bytes, metadata: AudioMetadata, on_done: DoneCallback) -> None:
        """Begin rendering `audio`. Raises DeviceError if the output cannot open."""

    @abstractmethod
    def pause(self) -> None:
        """Freeze output at the current position."""

    @abstractmethod
    def resume(self) -> None:
        """Continue from the frozen position."""

    @abstractmethod
    def stop(self) -> None:
        """Stop rendering, discard unplayed audio, release the output."""

    @abstractmethod
    def skip(self, seconds: float) -> None:
        """Move the play position forward."""


class SoundDeviceOutput(AudioOutput):
    """PortAudio output through a sounddevice RawOutputStream.

    One stream is opened per clip at the clip's own sample rate. The
    stream callback pulls blocks from a PcmCursor; pausing makes the
    cursor return silence without advancing.
    """

    def __init__(self, device: Optional[str | int] = None, blocksize: int = 0):
        import sounddevice as sd

        self._sd = sd
        self.device = device
        self.blocksize = blocksize
        self._stream = None
        self._cursor: Optional[PcmCursor] = None
        self._metadata: Optional[AudioMetadata] = None
        self._stopped: Optional[threading.Event] = None
        self._lock = threading.RLock()

    def start(self, audio: bytes, metadata: AudioMetadata, on_done: DoneCallback) -> None:
        dtype = _DTYPES.get(metadata.sample_width)
        if dtype is None:
            raise DeviceError(f"unsupported sample width: {metadata.sample_width} bytes")

        with self._lock:
            self.stop()
            cursor = PcmCursor(audio, metadata.frame_bytes)
            stopped = threading.Event()
            failure: list[BaseException] = []
            sd = self._sd

            def callback(outdata, frames, time, status):
                if status:
                    log.warning("Audio status: %s", status)
                try:
                    outdata[:] = cursor.read(len(outdata))
                except Exception as e:
                    failure.append(e)
                    raise sd.CallbackAbort from e
                if cursor.exhausted and not cursor.paused:
                    raise sd.CallbackStop

            def finished():
                if stopped.is_set():
                    return
                on_done(DeviceError(str(failure[0])) if failure else None)

            try:
                stream = sd.RawOutputStream(
                    samplerate=metadata.sample_rate,
                    channels=metadata.channels,
                    dtype=dtype,
                    device=self.device,
                    blocksize=self.blocksize,
                    callback=callback,
                    finished_callback=finished,
                )
                stream.start()
            except (sd.PortAudioError, ValueError) as e:
                raise DeviceError(f"cannot open output stream: {e}") from e

            self._stream = stream
            self._cursor = cursor
            self._metadata = metadata
            self._stopped = stopped
            log.debug("Stream started: %d bytes @ %dHz (%.2fs)",
                      len(audio), metadata.sample_rate, metadata.duration(len(audio)))

    def pause(self) -> None:
        with self._lock:
            if self._cursor is not None:
                self._cursor.set_paused(True)

    def resume(self) -> None:
        with self._lock:
            if self._cursor is not None:
                self._cursor.set_paused(False)

    def skip(self, seconds: float) -> None:
        with self._lock:
            if self._cursor is None:
                return
            offset = self._cursor.skip(self._metadata.bytes_for(seconds))
            log.debug("Skipped to %.2fs", self._metadata.duration(offset))

    def stop(self) -> None:
        with self._lock:
            stream, cursor, stopped = self._stream, self._cursor, self._stopped
            self._stream = self._cursor = self._metadata = self._stopped = None
            if stream is None:
                return
            stopped.set()
            # The callback may still run once before abort takes effect
            cursor.clear()
            try:
                stream.abort()
                stream.close()
            except self._sd.PortAudioError as e:
                raise DeviceError(f"cannot release output stream: {e}") from e
