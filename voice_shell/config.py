"""Settings for the voice shell.

Uses pydantic-settings to load from the environment and the project's
.env file. The settings object is frozen: it is read once at startup
and handed to each component explicitly.
"""

from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from engine.conversation import DEFAULT_MAX_TURNS, DEFAULT_SYSTEM_PROMPT

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    # Azure cloud TTS
    azure_speech_key: str = ""
    azure_speech_region: str = "eastus"
    azure_voice: str = "en-US-JennyNeural"
    azure_output_format: str = "raw-24khz-16bit-mono-pcm"

    # Local Piper TTS
    piper_voice: str = "en_US-lessac-medium"
    piper_model_dir: Path = PROJECT_ROOT / "models"
    piper_sample_rate: int = 24000

    # Which synthesizer speaks generated replies
    generated_voice_backend: Literal["azure", "piper"] = "azure"

    # Generation: empty provider means auto-detect from API keys
    llm_provider: str = ""
    ollama_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.2:3b"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    anthropic_api_key: str = ""
    claude_model: str = "claude-haiku-4-5-20251001"
    llm_max_tokens: int = 300
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_history_turns: int = DEFAULT_MAX_TURNS

    # Playback
    queue_capacity: int = 64
    fast_forward_seconds: float = 5.0
    output_device: Optional[str] = None

    # Chat log
    chat_db_path: Path = PROJECT_ROOT / "data" / "chat.db"

    # Timeouts (seconds)
    tts_timeout: float = 15.0
    llm_timeout: float = 60.0

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        extra="ignore",
        frozen=True,
    )


def load_settings(**overrides) -> Settings:
    return Settings(**overrides)
