"""
Runtime settings, read once from the environment (and a project-root .env).
"""

from __future__ import annotations
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from dotenv import load_dotenv

_ENV_PATH = Path(__file__).resolve().parents[1] / ".env"

DEFAULT_OPENAI_MODEL = "gpt-5.2"
DEFAULT_VERIFIER_MODEL = "gpt-4.1-mini"


def normalize_openai_model(raw: str) -> str:
    """Accept the short "5.2" alias users tend to type."""
    v = (raw or "").strip()
    if not v:
        return DEFAULT_OPENAI_MODEL
    if v == "5.2":
        return "gpt-5.2"
    return v


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, "") or default)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = DEFAULT_OPENAI_MODEL
    verifier_model: str = DEFAULT_VERIFIER_MODEL
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    perplexity_api_key: str = ""
    perplexity_base_url: str = "https://api.perplexity.ai"
    perplexity_model: str = "sonar"
    http_timeout_seconds: int = 30
    max_attempts: int = 3
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @property
    def primary_llm_enabled(self) -> bool:
        return bool(self.openai_api_key or self.anthropic_api_key)

    @property
    def secondary_llm_enabled(self) -> bool:
        return bool(self.gemini_api_key)

    @property
    def grounding_enabled(self) -> bool:
        return bool(self.perplexity_api_key)

    @classmethod
    def from_env(cls, load_env_file: bool = True) -> "Settings":
        if load_env_file:
            load_dotenv(dotenv_path=_ENV_PATH, override=False)
        origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
            openai_model=normalize_openai_model(os.getenv("OPENAI_MODEL", "")),
            verifier_model=os.getenv("VERIFIER_MODEL", DEFAULT_VERIFIER_MODEL),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
            anthropic_model=os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-20250514"),
            gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash"),
            perplexity_api_key=os.getenv("PERPLEXITY_API_KEY", ""),
            perplexity_base_url=os.getenv("PERPLEXITY_BASE_URL", "https://api.perplexity.ai").rstrip("/"),
            perplexity_model=os.getenv("PERPLEXITY_MODEL", "sonar"),
            http_timeout_seconds=_env_int("HTTP_TIMEOUT_SECONDS", 30),
            max_attempts=min(3, max(1, _env_int("MAX_ATTEMPTS", 3))),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_origins=origins or ["*"],
        )
