"""Shared data types for the speech engine."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class AudioMetadata:
    """Describes how a block of raw PCM should be rendered."""
    sample_rate: int = 24000
    channels: int = 1
    sample_width: int = 2   # bytes per sample, 16-bit signed LE
    text: str = ""          # what the audio says, for diagnostics

    @property
    def frame_bytes(self) -> int:
        return self.channels * self.sample_width

    def bytes_for(self, seconds: float) -> int:
        """Byte count covering `seconds` of audio, aligned to whole frames."""
        frames = int(seconds * self.sample_rate)
        return max(frames, 0) * self.frame_bytes

    def duration(self, n_bytes: int) -> float:
        return n_bytes / (self.frame_bytes * self.sample_rate)


@dataclass(frozen=True)
class SynthesizedSpeech:
    """Output of a synthesis backend: PCM bytes plus their format."""
    audio: bytes = field(repr=False)
    metadata: AudioMetadata
