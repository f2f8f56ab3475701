"""Playback commands and state.

Commands are immutable values; once sent they belong to the queue.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from engine.types import AudioMetadata, SynthesizedSpeech


class PlaybackState(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"
    STOPPING = "stopping"


@dataclass(frozen=True)
class Play:
    """Replace whatever is playing with this audio."""
    audio: bytes = field(repr=False)
    metadata: AudioMetadata = field(default_factory=AudioMetadata)

    @classmethod
    def from_speech(cls, speech: SynthesizedSpeech) -> "Play":
        return cls(audio=speech.audio, metadata=speech.metadata)


@dataclass(frozen=True)
class Pause:
    pass


@dataclass(frozen=True)
class Resume:
    pass


@dataclass(frozen=True)
class Stop:
    pass


@dataclass(frozen=True)
class FastForward:
    pass


PlaybackCommand = Union[Play, Pause, Resume, Stop, FastForward]
