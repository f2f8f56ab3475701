"""Voice shell — the operations the UI layer calls, and the wiring behind them.

Every operation returns as soon as the work is accepted:
  - speak_verbatim / speak_generated spawn a dispatch task
  - pause / resume / stop / fast_forward return once the command is queued

QueueClosed is raised when playback has shut down; nothing else
reaches the caller.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Iterable, Optional

from engine.errors import QueueClosed
from engine.llm import ResponseGenerator
from engine.tts import CloudTextToSpeech, GeneratedTextToSpeech, PiperTextToSpeech, SynthesisBackend
from playback.commands import FastForward, Pause, PlaybackState, Resume, Stop
from playback.controller import PlaybackController
from playback.device import AudioOutput

from .chat_log import ChatEntry, ChatLog
from .config import Settings
from .dispatch import DispatchFront, SpeakMode, record_turn

log = logging.getLogger("shell")


class VoiceShell:
    def __init__(
        self,
        dispatch: DispatchFront,
        resources: Iterable[SynthesisBackend] = (),
    ):
        self.dispatch = dispatch
        self.controller: PlaybackController = dispatch.controller
        self.chat_log: ChatLog = dispatch.chat_log
        self._resources = list(resources)
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings, output: Optional[AudioOutput] = None) -> "VoiceShell":
        """Build the full pipeline. `output` defaults to the system sound device."""
        if output is None:
            from playback.device import SoundDeviceOutput
            output = SoundDeviceOutput(settings.output_device)

        chat_log = ChatLog(settings.chat_db_path)
        controller = PlaybackController.from_settings(output, settings)

        cloud = CloudTextToSpeech.from_settings(settings)
        if settings.generated_voice_backend == "piper":
            speech: SynthesisBackend = PiperTextToSpeech.from_settings(settings)
        else:
            speech = cloud
        generated = GeneratedTextToSpeech(
            ResponseGenerator(settings),
            speech,
            on_reply=functools.partial(record_turn, chat_log),
        )

        dispatch = DispatchFront(
            controller,
            chat_log,
            backends={SpeakMode.VERBATIM: cloud, SpeakMode.GENERATE: generated},
            timeout=settings.llm_timeout + settings.tts_timeout,
        )
        return cls(dispatch, resources=[cloud, generated])

    @property
    def state(self) -> PlaybackState:
        return self.controller.state

    def start(self) -> asyncio.Task:
        return self.controller.start()

    # ── Speech ────────────────────────────────────────────────

    def _spawn(self, text: str, mode: Optional[SpeakMode]) -> asyncio.Task:
        if self.controller.closed:
            raise QueueClosed("playback has shut down")
        task = asyncio.create_task(self.dispatch.process_input(text, mode))
        self._tasks.add(task)
        task.add_done_callback(self._dispatch_done)
        return task

    def _dispatch_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, QueueClosed):
            log.warning("Speech finished after shutdown: %s", exc)
        elif exc is not None:
            log.error("Dispatch task failed: %s: %s", type(exc).__name__, exc)

    async def speak_verbatim(self, text: str) -> asyncio.Task:
        return self._spawn(text, SpeakMode.VERBATIM)

    async def speak_generated(self, prompt: str) -> asyncio.Task:
        return self._spawn(prompt, SpeakMode.GENERATE)

    async def submit(self, text: str) -> asyncio.Task:
        """Route by prefix; input without one is only logged."""
        return self._spawn(text, None)

    # ── Playback control ──────────────────────────────────────

    async def pause(self) -> None:
        await self.controller.send(Pause())

    async def resume(self) -> None:
        await self.controller.send(Resume())

    async def stop(self) -> None:
        await self.controller.send(Stop())

    async def fast_forward(self) -> None:
        await self.controller.send(FastForward())

    # ── Transcript ────────────────────────────────────────────

    async def history(self) -> list[ChatEntry]:
        """Full transcript in append order. Raises StoreError."""
        return await self.chat_log.list_all()

    # ── Lifecycle ─────────────────────────────────────────────

    async def drain(self) -> None:
        """Wait for in-flight dispatches and queued commands to be applied."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.controller.join()

    async def close(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.controller.close()
        await self.chat_log.close()
        for resource in self._resources:
            await resource.close()
        log.info("Voice shell closed")
