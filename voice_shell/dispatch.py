"""Utterance dispatch — text in, speech queued and the turn logged.

Core flow for one utterance:
  1. Decide the mode once, at the boundary ("speak text ..." / "speak gpt ...")
  2. Synthesize the payload with that mode's backend, queue a Play
  3. Log the user's turn to the chat store, regardless of step 2

Backend and store failures are logged here and go no further. The only
error a caller can see is QueueClosed, when playback has shut down.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

from engine.errors import QueueClosed, StoreError, SynthesisError
from engine.tts import SynthesisBackend
from playback.commands import Play
from playback.controller import PlaybackController

from .chat_log import ChatEntry, ChatLog

log = logging.getLogger("dispatch")


class SpeakMode(str, Enum):
    VERBATIM = "verbatim"
    GENERATE = "generate"


PREFIXES = {
    SpeakMode.VERBATIM: "speak text",
    SpeakMode.GENERATE: "speak gpt",
}


@dataclass(frozen=True)
class Utterance:
    mode: Optional[SpeakMode]   # None: no recognised prefix, log only
    payload: str


def _strip_prefix(text: str, prefix: str) -> Optional[str]:
    if text == prefix:
        return ""
    if text.startswith(prefix) and text[len(prefix)].isspace():
        return text[len(prefix):]
    return None


def parse_utterance(text: str, mode: Optional[SpeakMode] = None) -> Utterance:
    """Split raw input into a mode and the payload to speak.

    With an explicit mode, that mode's prefix is removed if present.
    Without one, the mode comes from the prefix.
    """
    text = (text or "").strip()
    if mode is not None:
        rest = _strip_prefix(text, PREFIXES[mode])
        return Utterance(mode, (text if rest is None else rest).strip())
    for candidate, prefix in PREFIXES.items():
        rest = _strip_prefix(text, prefix)
        if rest is not None:
            return Utterance(candidate, rest.strip())
    return Utterance(None, text)


async def record_turn(chat_log: ChatLog, body: str) -> Optional[ChatEntry]:
    """Append one turn to the transcript. Store failures are logged, not raised."""
    try:
        return await chat_log.append(ChatEntry.now(body))
    except StoreError as e:
        log.warning("Chat log append failed: %s", e)
        return None


class DispatchFront:
    """Entry point for one utterance: synthesize, queue playback, log the turn."""

    def __init__(
        self,
        controller: PlaybackController,
        chat_log: ChatLog,
        backends: Mapping[SpeakMode, SynthesisBackend],
        timeout: Optional[float] = None,
    ):
        self.controller = controller
        self.chat_log = chat_log
        self.backends = dict(backends)
        self.timeout = timeout

    async def process_input(self, text: str, mode: Optional[SpeakMode] = None) -> Optional[Utterance]:
        """Handle one utterance. Returns None when there was nothing to say.

        Raises QueueClosed only if speech was produced but playback has shut down.
        """
        utterance = parse_utterance(text, mode)
        if not utterance.payload:
            log.debug("Empty payload after stripping %r", text)
            return None

        speak = asyncio.ensure_future(self._speak(utterance))
        await self.record_turn(utterance.payload)
        await speak
        return utterance

    async def record_turn(self, body: str) -> Optional[ChatEntry]:
        return await record_turn(self.chat_log, body)

    async def _speak(self, utterance: Utterance) -> None:
        if utterance.mode is None:
            log.info("No speak prefix, logging only: %r", utterance.payload[:80])
            return

        backend = self.backends.get(utterance.mode)
        if backend is None:
            log.warning("No backend configured for %s mode", utterance.mode.value)
            return

        try:
            speech = await asyncio.wait_for(backend.synthesize(utterance.payload), self.timeout)
        except SynthesisError as e:
            log.warning("%s failed at %s stage: %s: %s",
                        backend.name, e.stage, type(e).__name__, e)
            return
        except asyncio.TimeoutError:
            log.warning("%s timed out after %ss", backend.name, self.timeout)
            return
        except Exception:
            log.exception("%s raised an unexpected exception", backend.name)
            return

        if not speech.audio:
            log.warning("%s returned no audio for %r", backend.name, utterance.payload[:50])
            return

        try:
            await self.controller.send(Play.from_speech(speech))
        except QueueClosed:
            log.warning("Playback closed, dropping speech for %r", utterance.payload[:50])
            raise
