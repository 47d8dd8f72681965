"""Environment configuration.

Values come from the process environment, with a ``.env`` file at the
project root loaded first (existing variables win).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

ENV_PATH = os.path.join(os.path.dirname(__file__), "..", ".env")

PROMPT_ENV_VARS = {
    "intent": "OPENAI_PROMPT_INTENT_ID",
    "spread": "OPENAI_PROMPT_SPREAD_ID",
    "reading": "OPENAI_PROMPT_READING_ID",
    "clarification": "OPENAI_PROMPT_CLARIFICATION_ID",
    "explanation": "OPENAI_PROMPT_EXPLANATION_ID",
}


class ConfigError(RuntimeError):
    pass


def _float(env: Mapping[str, str], name: str, default: Optional[float]) -> Optional[float]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


@dataclass(frozen=True)
class Settings:
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_base_url: Optional[str] = None
    openai_timeout: Optional[float] = None
    prompt_ids: Mapping[str, str] = None  # type: ignore[assignment]

    draw_timeout: float = 120.0
    display_settle: float = 0.5
    connect_timeout: float = 10.0
    next_card_nudge: float = 3.0
    max_session_duration: float = 1800.0
    log_level: str = "INFO"

    def __post_init__(self):
        if self.prompt_ids is None:
            object.__setattr__(self, "prompt_ids", {})

    @property
    def ai_enabled(self) -> bool:
        return bool(self.openai_api_key)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, load_env_file: bool = True) -> "Settings":
        """Build settings from environment variables.

        Args:
            env: Mapping to read instead of ``os.environ`` (tests)
            load_env_file: Load the project ``.env`` before reading ``os.environ``

        Returns:
            Settings instance

        Raises:
            ConfigError: On a malformed number or missing prompt ids while
                an API key is configured.
        """
        if env is None:
            if load_env_file:
                load_dotenv(ENV_PATH)
            env = os.environ

        api_key = env.get("OPENAI_API_KEY") or None
        prompt_ids = {kind: env.get(var, "") for kind, var in PROMPT_ENV_VARS.items()}
        if api_key:
            missing = [PROMPT_ENV_VARS[kind] for kind, value in prompt_ids.items() if not value]
            if missing:
                raise ConfigError(f"Missing stored prompt ids: {', '.join(missing)}")

        return cls(
            openai_api_key=api_key,
            openai_model=env.get("OPENAI_MODEL") or "gpt-4o-mini",
            openai_base_url=env.get("OPENAI_BASE_URL") or None,
            openai_timeout=_float(env, "OPENAI_TIMEOUT_SECONDS", None),
            prompt_ids={k: v for k, v in prompt_ids.items() if v},
            draw_timeout=_float(env, "TAROT_DRAW_TIMEOUT_SECONDS", 120.0),
            display_settle=_float(env, "TAROT_DISPLAY_SETTLE_SECONDS", 0.5),
            connect_timeout=_float(env, "TAROT_CONNECT_TIMEOUT_SECONDS", 10.0),
            next_card_nudge=_float(env, "TAROT_NEXT_CARD_NUDGE_SECONDS", 3.0),
            max_session_duration=_float(env, "TAROT_MAX_SESSION_SECONDS", 1800.0),
            log_level=(env.get("TAROT_LOG_LEVEL") or "INFO").upper(),
        )
