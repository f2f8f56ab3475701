"""LLM wrapper — Claude, OpenAI, or Ollama, chosen from settings."""

from __future__ import annotations

import asyncio
import functools
import logging
import re
from typing import Optional

import httpx

from .conversation import ConversationHistory
from .errors import GenerationError

log = logging.getLogger("llm")

PROVIDERS = ("claude", "openai", "ollama")

# Some local models wrap their reasoning in <think>...</think>
_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL)


def strip_thinking(text: str) -> str:
    return _THINK_RE.sub("", text or "").strip()


class ResponseGenerator:
    """Produces the assistant's reply for a prompt, keeping a short history.

    Ollama is called with an async httpx client. The Claude and OpenAI
    SDK clients are synchronous, so those calls run in the thread pool.
    Every failure is raised as GenerationError.
    """

    def __init__(self, settings, history: Optional[ConversationHistory] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.history = history or ConversationHistory(
            system=settings.system_prompt, max_turns=settings.max_history_turns
        )
        self._client = client
        self._owns_client = client is None
        self._anthropic_client = None
        self._openai_client = None

    @property
    def provider(self) -> str:
        """Configured provider, or auto-detect: Claude > OpenAI > Ollama."""
        configured = (self.settings.llm_provider or "").lower()
        if configured in PROVIDERS:
            return configured
        if self.settings.anthropic_api_key:
            return "claude"
        if self.settings.openai_api_key:
            return "openai"
        return "ollama"

    # ── Clients ───────────────────────────────────────────────

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.llm_timeout)
            log.info("async httpx client initialized for Ollama at %s", self.settings.ollama_url)
        return self._client

    def _get_anthropic(self):
        if self._anthropic_client is None:
            import anthropic
            self._anthropic_client = anthropic.Anthropic(
                api_key=self.settings.anthropic_api_key, timeout=self.settings.llm_timeout
            )
            log.info("Anthropic client initialized")
        return self._anthropic_client

    def _get_openai(self):
        if self._openai_client is None:
            from openai import OpenAI
            self._openai_client = OpenAI(
                api_key=self.settings.openai_api_key, timeout=self.settings.llm_timeout
            )
            log.info("OpenAI client initialized")
        return self._openai_client

    # ── Providers ─────────────────────────────────────────────

    def _generate_claude(self, messages: list[dict]) -> str:
        resp = self._get_anthropic().messages.create(
            model=self.settings.claude_model,
            max_tokens=self.settings.llm_max_tokens,
            system=self.history.system,
            messages=messages,
        )
        text = resp.content[0].text
        log.info("Claude response: %d chars, stop=%s", len(text), resp.stop_reason)
        return text

    def _generate_openai(self, messages: list[dict]) -> str:
        resp = self._get_openai().chat.completions.create(
            model=self.settings.openai_model,
            max_tokens=self.settings.llm_max_tokens,
            messages=[{"role": "system", "content": self.history.system}] + messages,
        )
        text = resp.choices[0].message.content or ""
        log.info("OpenAI response (%s): %d chars, finish=%s",
                 self.settings.openai_model, len(text), resp.choices[0].finish_reason)
        return text

    async def _generate_ollama(self, messages: list[dict]) -> str:
        body = {
            "model": self.settings.ollama_model,
            "messages": [{"role": "system", "content": self.history.system}] + messages,
            "stream": False,
        }
        try:
            resp = await self._get_client().post(f"{self.settings.ollama_url}/api/chat", json=body)
            resp.raise_for_status()
            text = resp.json()["message"]["content"]
        except httpx.HTTPStatusError as e:
            raise GenerationError(
                f"ollama: HTTP {e.response.status_code} for model {self.settings.ollama_model}"
            ) from e
        except httpx.HTTPError as e:
            raise GenerationError(
                f"ollama: cannot reach {self.settings.ollama_url}: {type(e).__name__}"
            ) from e
        except (KeyError, TypeError, ValueError) as e:
            raise GenerationError(f"ollama: malformed response: {e}") from e
        log.info("Ollama response (%s): %d chars", self.settings.ollama_model, len(text))
        return text

    async def _generate(self, messages: list[dict]) -> str:
        provider = self.provider
        log.info("LLM generate: provider=%s, %d messages", provider, len(messages))
        if provider == "ollama":
            return await self._generate_ollama(messages)

        fn = self._generate_claude if provider == "claude" else self._generate_openai
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(fn, messages))
        except Exception as e:
            raise GenerationError(f"{provider}: {type(e).__name__}: {e}") from e

    async def reply(self, prompt: str) -> str:
        """Generate a reply to `prompt`. History only records successful turns."""
        messages = self.history.get_messages() + [{"role": "user", "content": prompt}]
        text = strip_thinking(await self._generate(messages))
        if text:
            self.history.add_exchange(prompt, text)
        return text

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
