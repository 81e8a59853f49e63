from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Optional

def _bool(env: str, default: bool = False) -> bool:
    v = os.getenv(env)
    if v is None:
        return default
    return v.lower() in ("1", "true", "yes", "on")

@dataclass
class Settings:
    # LLM settings
    OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")
    LLM_MODEL: str = os.getenv("LLM_MODEL", "gpt-4o-mini")
    LLM_TEMPERATURE: float = float(os.getenv("LLM_TEMPERATURE", "0.7"))
    LLM_MAX_TOKENS: int = int(os.getenv("LLM_MAX_TOKENS", "1000"))
    LLM_PRESENCE_PENALTY: float = float(os.getenv("LLM_PRESENCE_PENALTY", "0.6"))
    LLM_FREQUENCY_PENALTY: float = float(os.getenv("LLM_FREQUENCY_PENALTY", "0.5"))
    LLM_TOP_P: float = float(os.getenv("LLM_TOP_P", "0.9"))
    CHAT_MAX_TOKENS: int = int(os.getenv("CHAT_MAX_TOKENS", "500"))

    # Per-call timeouts in seconds, by call kind and device class
    PERSONALITY_TIMEOUT_DESKTOP_S: float = float(os.getenv("PERSONALITY_TIMEOUT_DESKTOP_S", "120"))
    PERSONALITY_TIMEOUT_MOBILE_S: float = float(os.getenv("PERSONALITY_TIMEOUT_MOBILE_S", "180"))
    PERSONALITY_TIMEOUT_TABLET_S: float = float(os.getenv("PERSONALITY_TIMEOUT_TABLET_S", "180"))
    CHAT_TIMEOUT_DESKTOP_S: float = float(os.getenv("CHAT_TIMEOUT_DESKTOP_S", "60"))
    CHAT_TIMEOUT_MOBILE_S: float = float(os.getenv("CHAT_TIMEOUT_MOBILE_S", "90"))
    CHAT_TIMEOUT_TABLET_S: float = float(os.getenv("CHAT_TIMEOUT_TABLET_S", "90"))
    BASE_TIMEOUT_DESKTOP_S: float = float(os.getenv("BASE_TIMEOUT_DESKTOP_S", "30"))
    BASE_TIMEOUT_MOBILE_S: float = float(os.getenv("BASE_TIMEOUT_MOBILE_S", "45"))
    BASE_TIMEOUT_TABLET_S: float = float(os.getenv("BASE_TIMEOUT_TABLET_S", "45"))
    TIMEOUT_ESCALATION_FACTOR: float = float(os.getenv("TIMEOUT_ESCALATION_FACTOR", "1.5"))
    DEVICE_CLASS: str = os.getenv("DEVICE_CLASS", "desktop")

    # Retry budgets
    STAGE_MAX_ATTEMPTS: int = int(os.getenv("STAGE_MAX_ATTEMPTS", "10"))
    STAGE_RETRY_LIMIT: int = int(os.getenv("STAGE_RETRY_LIMIT", "10"))
    JOB_RETRY_LIMIT: int = int(os.getenv("JOB_RETRY_LIMIT", "10"))
    RETRY_BASE_DELAY_S: float = float(os.getenv("RETRY_BASE_DELAY_S", "1.0"))
    INTER_STAGE_DELAY_S: float = float(os.getenv("INTER_STAGE_DELAY_S", "2.0"))
    # Internal watchdog; a stage running longer is aborted and resumed
    STAGE_DEADLINE_S: float = float(os.getenv("STAGE_DEADLINE_S", "900"))

    # Response quality and regeneration sessions
    MIN_RESPONSE_QUALITY: float = float(os.getenv("MIN_RESPONSE_QUALITY", "0.7"))
    STYLE_VARIATION_STEP: float = float(os.getenv("STYLE_VARIATION_STEP", "0.1"))
    MAX_STYLE_VARIATION: float = float(os.getenv("MAX_STYLE_VARIATION", "0.3"))
    MAX_PREVIOUS_RESPONSES: int = int(os.getenv("MAX_PREVIOUS_RESPONSES", "5"))
    MAX_EXAMPLE_POSTS: int = int(os.getenv("MAX_EXAMPLE_POSTS", "5"))
    MIN_POST_WORDS: int = int(os.getenv("MIN_POST_WORDS", "5"))

    # Sliding-window rate limiter
    RATE_LIMIT_WINDOW_S: float = float(os.getenv("RATE_LIMIT_WINDOW_S", "60"))
    RATE_LIMIT_MAX_REQUESTS: int = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "50"))
    RATE_LIMIT_MAX_CONCURRENT: int = int(os.getenv("RATE_LIMIT_MAX_CONCURRENT", "3"))

    # Dispatcher
    DISPATCH_MAX_CONCURRENT: int = int(os.getenv("DISPATCH_MAX_CONCURRENT", "5"))
    DISPATCH_MAX_RETRIES: int = int(os.getenv("DISPATCH_MAX_RETRIES", "3"))
    DISPATCH_RETRY_BASE_DELAY_S: float = float(os.getenv("DISPATCH_RETRY_BASE_DELAY_S", "1.0"))
    DISPATCH_MAX_RETRY_DELAY_S: float = float(os.getenv("DISPATCH_MAX_RETRY_DELAY_S", "30"))
    DISPATCH_RETRY_JITTER_S: float = float(os.getenv("DISPATCH_RETRY_JITTER_S", "1.0"))
    QUEUE_STATE_TTL_S: int = int(os.getenv("QUEUE_STATE_TTL_S", "300"))
    QUEUE_STATE_KEY: str = os.getenv("QUEUE_STATE_KEY", "personality_engine:queue_state")
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # Storage
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///data/analysis.db")
    DATABASE_ECHO: bool = _bool("DATABASE_ECHO", False)
    RAW_RESPONSE_DIR: Optional[str] = os.getenv("RAW_RESPONSE_DIR") or None

    def timeout_for(self, kind: str, device_class: str) -> float:
        """Per-call timeout in seconds for a call kind (personality/chat/base) on a device class."""
        name = f"{kind.upper()}_TIMEOUT_{device_class.upper()}_S"
        return float(getattr(self, name, self.BASE_TIMEOUT_DESKTOP_S))

settings = Settings()
