"""Thread-safe read cursor over one PCM clip.

The audio callback thread reads fixed-size blocks while the event loop
pauses, resumes, or skips. While paused, reads return silence and the
position does not move, so resume continues from the same offset.
"""

import threading


class PcmCursor:
    """One PCM blob, read from the front in fixed-size blocks.

    read(n) always returns exactly n bytes, zero-padded past the end
    or while paused.
    """

    def __init__(self, data: bytes, frame_bytes: int = 2):
        self._data = data
        self._frame_bytes = max(frame_bytes, 1)
        self._offset = 0
        self._paused = False
        self._lock = threading.Lock()

    @property
    def offset(self) -> int:
        with self._lock:
            return self._offset

    @property
    def remaining(self) -> int:
        with self._lock:
            return len(self._data) - self._offset

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._paused

    def set_paused(self, paused: bool):
        with self._lock:
            self._paused = paused

    def read(self, n: int) -> bytes:
        """Read exactly n bytes and advance, unless paused."""
        with self._lock:
            if self._paused:
                return bytes(n)
            chunk = self._data[self._offset:self._offset + n]
            self._offset += len(chunk)
            if len(chunk) < n:
                # Past the end, rest is silence
                chunk += bytes(n - len(chunk))
            return chunk

    def skip(self, n: int) -> int:
        """Advance by n bytes (frame-aligned, clamped to the end). Returns the new offset."""
        n -= n % self._frame_bytes
        with self._lock:
            self._offset = min(self._offset + max(n, 0), len(self._data))
            return self._offset

    def clear(self):
        """Drop the remaining audio."""
        with self._lock:
            self._offset = len(self._data)
