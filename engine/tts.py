"""Speech synthesis backends — Azure cloud TTS, local Piper, and generate-then-speak.

Every backend exposes one coroutine, ``synthesize(text)``, returning
``SynthesizedSpeech``. Failures are raised as ``SynthesisError``
subclasses so the dispatcher can log them by stage.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Awaitable, Callable, Optional
from xml.sax.saxutils import escape, quoteattr

import httpx
import numpy as np
from scipy.signal import resample

from .errors import (
    AuthError,
    BackendUnavailable,
    EmptyInput,
    GenerationError,
    NetworkError,
    SynthesisError,
)
from .llm import ResponseGenerator
from .types import AudioMetadata, SynthesizedSpeech

log = logging.getLogger("tts")

# e.g. "raw-24khz-16bit-mono-pcm"
_FORMAT_RE = re.compile(r"(\d+)khz-(\d+)bit-(mono|stereo)")


def _require_text(text: str) -> str:
    text = (text or "").strip()
    if not text:
        raise EmptyInput("nothing to synthesize")
    return text


def parse_output_format(output_format: str) -> AudioMetadata:
    """Derive PCM layout from an Azure output format name."""
    match = _FORMAT_RE.search(output_format)
    if not match or not output_format.startswith("raw-"):
        raise BackendUnavailable(f"unsupported output format: {output_format!r} (need raw PCM)")
    khz, bits, layout = match.groups()
    return AudioMetadata(
        sample_rate=int(khz) * 1000,
        channels=1 if layout == "mono" else 2,
        sample_width=int(bits) // 8,
    )


def raise_for_backend_status(resp: httpx.Response, backend: str) -> None:
    """Map an HTTP error status onto the synthesis error taxonomy."""
    status = resp.status_code
    if status < 400:
        return
    detail = resp.text[:200] if resp.content else ""
    if status in (401, 403):
        raise AuthError(f"{backend}: HTTP {status} {detail}".strip())
    raise BackendUnavailable(f"{backend}: HTTP {status} {detail}".strip())


class SynthesisBackend(ABC):
    """Abstract base for a text-to-speech provider."""

    name: str = "backend"

    @abstractmethod
    async def synthesize(self, text: str) -> SynthesizedSpeech:
        """Turn text into PCM audio. Raises SynthesisError subclasses."""

    async def close(self) -> None:
        """Release network clients or models. Default: nothing to release."""


# ── Azure cloud TTS ───────────────────────────────────────────

class CloudTextToSpeech(SynthesisBackend):
    """Azure Cognitive Services text-to-speech over REST, one round trip per call."""

    name = "azure"

    def __init__(
        self,
        api_key: str,
        region: str,
        voice: str = "en-US-JennyNeural",
        output_format: str = "raw-24khz-16bit-mono-pcm",
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.region = region
        self.voice = voice
        self.output_format = output_format
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings) -> "CloudTextToSpeech":
        return cls(
            api_key=settings.azure_speech_key,
            region=settings.azure_speech_region,
            voice=settings.azure_voice,
            output_format=settings.azure_output_format,
            timeout=settings.tts_timeout,
        )

    @property
    def endpoint(self) -> str:
        return f"https://{self.region}.tts.speech.microsoft.com/cognitiveservices/v1"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            log.info("httpx client initialized for Azure TTS (%s)", self.region)
        return self._client

    def _ssml(self, text: str) -> str:
        return (
            "<speak version='1.0' xml:lang='en-US'>"
            f"<voice name={quoteattr(self.voice)}>{escape(text)}</voice>"
            "</speak>"
        )

    async def synthesize(self, text: str) -> SynthesizedSpeech:
        text = _require_text(text)
        if not self.api_key:
            raise AuthError("azure: no speech key configured")
        metadata = parse_output_format(self.output_format)

        headers = {
            "Ocp-Apim-Subscription-Key": self.api_key,
            "Content-Type": "application/ssml+xml",
            "X-Microsoft-OutputFormat": self.output_format,
            "User-Agent": "voice-shell",
        }
        try:
            resp = await self._get_client().post(
                self.endpoint, content=self._ssml(text).encode("utf-8"), headers=headers
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"azure: timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"azure: {type(e).__name__}: {e}") from e

        raise_for_backend_status(resp, self.name)
        if not resp.content:
            raise BackendUnavailable("azure: empty audio response")

        log.info("Azure TTS: %d chars -> %d bytes (%.2fs)",
                 len(text), len(resp.content), metadata.duration(len(resp.content)))
        return SynthesizedSpeech(
            audio=resp.content,
            metadata=AudioMetadata(
                sample_rate=metadata.sample_rate,
                channels=metadata.channels,
                sample_width=metadata.sample_width,
                text=text,
            ),
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


# ── Local Piper TTS ───────────────────────────────────────────
# URL pattern: https://huggingface.co/rhasspy/piper-voices/resolve/main/{lang}/{locale}/{voice_name}/{quality}/{id}.onnx

VOICE_CATALOG = [
    {"id": "en_US-lessac-medium",     "lang": "en", "locale": "en_US", "voice_name": "lessac",     "quality": "medium"},
    {"id": "en_US-hfc_female-medium", "lang": "en", "locale": "en_US", "voice_name": "hfc_female", "quality": "medium"},
    {"id": "en_US-hfc_male-medium",   "lang": "en", "locale": "en_US", "voice_name": "hfc_male",   "quality": "medium"},
    {"id": "en_GB-alba-medium",       "lang": "en", "locale": "en_GB", "voice_name": "alba",       "quality": "medium"},
]

DEFAULT_VOICE = "en_US-lessac-medium"

_CATALOG_BY_ID = {v["id"]: v for v in VOICE_CATALOG}


class PiperTextToSpeech(SynthesisBackend):
    """Local Piper voice model, resampled to a fixed output rate.

    The model is downloaded and loaded on first use; synthesis runs in
    the default thread pool so the event loop is never blocked.
    """

    name = "piper"

    def __init__(self, voice_id: str = DEFAULT_VOICE, model_dir: Path | str = "models",
                 target_rate: int = 24000):
        if voice_id not in _CATALOG_BY_ID:
            log.warning("Unknown voice %r, falling back to default", voice_id)
            voice_id = DEFAULT_VOICE
        self.voice_id = voice_id
        self.model_dir = Path(model_dir)
        self.target_rate = target_rate
        self._voice = None

    @classmethod
    def from_settings(cls, settings) -> "PiperTextToSpeech":
        return cls(settings.piper_voice, settings.piper_model_dir, settings.piper_sample_rate)

    def _model_urls(self) -> tuple[str, str]:
        entry = _CATALOG_BY_ID[self.voice_id]
        base = (
            f"https://huggingface.co/rhasspy/piper-voices/resolve/main/"
            f"{entry['lang']}/{entry['locale']}/{entry['voice_name']}/{entry['quality']}/{self.voice_id}"
        )
        return f"{base}.onnx", f"{base}.onnx.json"

    def _download_model(self) -> Path:
        """Fetch the ONNX model and its config if not already on disk."""
        self.model_dir.mkdir(parents=True, exist_ok=True)
        onnx_path = self.model_dir / f"{self.voice_id}.onnx"
        config_path = self.model_dir / f"{self.voice_id}.onnx.json"
        onnx_url, config_url = self._model_urls()

        try:
            for url, path in ((onnx_url, onnx_path), (config_url, config_path)):
                if not path.exists():
                    log.info("Downloading %s ...", url)
                    urllib.request.urlretrieve(url, path)
        except (urllib.error.URLError, OSError) as e:
            raise NetworkError(f"piper: model download failed: {e}") from e
        return onnx_path

    def _load_voice(self):
        if self._voice is not None:
            return self._voice
        try:
            from piper import PiperVoice
        except ImportError as e:
            raise BackendUnavailable("piper: piper-tts is not installed") from e

        model_path = self._download_model()
        log.info("Loading Piper TTS voice: %s", model_path)
        self._voice = PiperVoice.load(str(model_path))
        log.info("Piper voice loaded: %s (native rate: %d Hz)",
                 self.voice_id, self._voice.config.sample_rate)
        return self._voice

    def _synthesize_sync(self, text: str) -> bytes:
        """text -> Piper chunks at native rate -> concat -> resample -> int16 PCM"""
        voice = self._load_voice()
        native_rate = voice.config.sample_rate

        raw_parts = [chunk.audio_int16_bytes for chunk in voice.synthesize(text)]
        if not raw_parts:
            raise BackendUnavailable(f"piper: no audio produced for {text[:50]!r}")

        samples = np.frombuffer(b"".join(raw_parts), dtype=np.int16).astype(np.float64)
        if native_rate == self.target_rate:
            return samples.astype(np.int16).tobytes()

        num_output_samples = int(len(samples) * self.target_rate / native_rate)
        resampled = resample(samples, num_output_samples)
        resampled = np.clip(resampled, -32768, 32767).astype(np.int16)
        log.debug("Piper [%s]: %d chars -> %d samples @ %dHz -> %d samples @ %dHz",
                  self.voice_id, len(text), len(samples), native_rate,
                  len(resampled), self.target_rate)
        return resampled.tobytes()

    async def synthesize(self, text: str) -> SynthesizedSpeech:
        text = _require_text(text)
        loop = asyncio.get_running_loop()
        audio = await loop.run_in_executor(None, functools.partial(self._synthesize_sync, text))
        return SynthesizedSpeech(
            audio=audio,
            metadata=AudioMetadata(sample_rate=self.target_rate, text=text),
        )


# ── Generate, then speak ──────────────────────────────────────

class GeneratedTextToSpeech(SynthesisBackend):
    """Ask a language model for a reply, then speak the reply.

    Generation failures are raised as GenerationError and never reach
    the speech stage. A successful reply is handed to ``on_reply``
    (used to log the assistant turn) before synthesis starts.
    """

    name = "generated"

    def __init__(
        self,
        generator: ResponseGenerator,
        speech: SynthesisBackend,
        on_reply: Optional[Callable[[str], Awaitable[None]]] = None,
    ):
        self.generator = generator
        self.speech = speech
        self.on_reply = on_reply

    async def synthesize(self, text: str) -> SynthesizedSpeech:
        prompt = _require_text(text)
        try:
            reply = await self.generator.reply(prompt)
        except GenerationError:
            raise
        except Exception as e:
            raise GenerationError(f"{type(e).__name__}: {e}") from e
        if not reply.strip():
            raise GenerationError("model returned an empty reply")

        log.info("Generated reply: %r", reply[:80])
        if self.on_reply is not None:
            await self.on_reply(reply)

        try:
            return await self.speech.synthesize(reply)
        except SynthesisError:
            raise
        except Exception as e:
            raise BackendUnavailable(f"{self.speech.name}: {type(e).__name__}: {e}") from e

    async def close(self) -> None:
        await self.generator.close()
        await self.speech.close()
