"""
Configuration for the strategy audit engine.

Every knob defaults from an environment variable so the same code runs in
tests (in-memory stores, scripted provider) and in production (file stores,
Anthropic or OpenAI provider). A .env file is honoured when present.
"""
import os
from dataclasses import dataclass, field
from typing import Literal

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


@dataclass
class AuditConfig:
    """Configuration for the audit pipeline."""

    # Reasoning provider
    provider: Literal["anthropic", "openai"] = field(
        default_factory=lambda: os.getenv("REASONING_PROVIDER", "anthropic").lower()
    )
    anthropic_model: str = field(
        default_factory=lambda: os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-20250514")
    )
    openai_model: str = field(
        default_factory=lambda: os.getenv("OPENAI_MODEL", "gpt-4o")
    )
    # Cheaper model for interrogation and discovery
    fast_model: str = field(
        default_factory=lambda: os.getenv("FAST_MODEL", "claude-haiku-4-5-20251001")
    )
    max_tokens: int = field(default_factory=lambda: _env_int("MAX_TOKENS", 4096))
    provider_timeout_seconds: float = field(
        default_factory=lambda: _env_float("PROVIDER_TIMEOUT_SECONDS", 120.0)
    )

    # Interrogation
    session_ttl_seconds: int = field(
        default_factory=lambda: _env_int("SESSION_TTL_SECONDS", 60 * 60)
    )
    max_turns: int = field(default_factory=lambda: _env_int("MAX_TURNS", 3))
    audit_threshold: int = field(default_factory=lambda: _env_int("AUDIT_THRESHOLD", 70))

    # Stress testing
    mitigation_threshold: int = field(
        default_factory=lambda: _env_int("MITIGATION_THRESHOLD", 40)
    )

    # Persistence
    store_backend: Literal["memory", "file"] = field(
        default_factory=lambda: os.getenv("STORE_BACKEND", "memory").lower()
    )
    store_dir: str = field(
        default_factory=lambda: os.getenv("STORE_DIR", ".cache/strategy_audit")
    )

    # Report access
    report_token_secret: str = field(
        default_factory=lambda: os.getenv("REPORT_TOKEN_SECRET", "change-me")
    )
    report_token_length: int = field(
        default_factory=lambda: _env_int("REPORT_TOKEN_LENGTH", 8)
    )

    @classmethod
    def from_env(cls) -> "AuditConfig":
        """Create config from environment variables."""
        return cls()


# Global default config
default_config = AuditConfig()
