from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type

from openai import AsyncOpenAI
from openai import APIConnectionError, APIStatusError, APITimeoutError, RateLimitError

from .config import settings
from .errors import (
    ChatResponseTimeoutError,
    EmptyResponseError,
    GenerationTimeoutError,
    ModelUnavailableError,
    NetworkError,
    PersonalityAnalysisTimeoutError,
)
from .models import DeviceClass
from .observability import MetricsCollector

logger = logging.getLogger(__name__)


@dataclass
class GenerationResult:
    text: str
    finish_reason: Optional[str] = None
    tokens_in: int = 0
    tokens_out: int = 0


class TimeoutPolicy:
    """Per-run call timeout for one device class.

    After a timeout, mobile and tablet callers get a longer timeout (x1.5 by default) and
    keep it for the rest of the run. Desktop timeouts never change.
    """

    def __init__(self, device_class: DeviceClass = DeviceClass.DESKTOP, kind: str = "personality",
                 factor: Optional[float] = None, initial: Optional[float] = None):
        self.device_class = DeviceClass(device_class)
        self.kind = kind
        self.factor = factor if factor is not None else settings.TIMEOUT_ESCALATION_FACTOR
        self._timeout = initial if initial is not None else settings.timeout_for(kind, self.device_class.value)

    @property
    def current(self) -> float:
        return self._timeout

    def escalate(self) -> bool:
        if self.device_class is DeviceClass.DESKTOP:
            return False
        self._timeout *= self.factor
        logger.warning(f"{self.device_class.value} {self.kind} timeout escalated to {self._timeout:.1f}s")
        return True


class TextGenerationClient:
    """Async OpenAI chat-completions wrapper that maps provider failures to typed errors."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, *, model: Optional[str] = None,
                 metrics: Optional[MetricsCollector] = None):
        if client is None:
            if not settings.OPENAI_API_KEY:
                raise RuntimeError("OPENAI_API_KEY is not set")
            client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        self.client = client
        self.model = model or settings.LLM_MODEL
        self.metrics = metrics or MetricsCollector()

    async def generate(self, system: str, prompt: str, *, timeout: float,
                       temperature: Optional[float] = None,
                       max_tokens: Optional[int] = None,
                       timeout_error: Type[GenerationTimeoutError] = PersonalityAnalysisTimeoutError) -> GenerationResult:
        """Single system+user prompt call with the analysis sampling parameters."""
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ]
        return await self._complete(
            messages,
            timeout=timeout,
            timeout_error=timeout_error,
            temperature=settings.LLM_TEMPERATURE if temperature is None else temperature,
            max_tokens=max_tokens or settings.LLM_MAX_TOKENS,
            presence_penalty=settings.LLM_PRESENCE_PENALTY,
            frequency_penalty=settings.LLM_FREQUENCY_PENALTY,
            top_p=settings.LLM_TOP_P,
        )

    async def chat(self, messages: List[Dict[str, str]], *, timeout: float,
                   tuning: Optional[Dict[str, Any]] = None) -> GenerationResult:
        """One conversational turn. ``tuning`` may override temperature, max_tokens and penalties."""
        tuning = tuning or {}
        return await self._complete(
            messages,
            timeout=timeout,
            timeout_error=ChatResponseTimeoutError,
            temperature=float(tuning.get("temperature", settings.LLM_TEMPERATURE)),
            max_tokens=int(tuning.get("max_tokens", settings.CHAT_MAX_TOKENS)),
            presence_penalty=float(tuning.get("presence_penalty", settings.LLM_PRESENCE_PENALTY)),
            frequency_penalty=float(tuning.get("frequency_penalty", settings.LLM_FREQUENCY_PENALTY)),
            top_p=settings.LLM_TOP_P,
        )

    async def _complete(self, messages: List[Dict[str, str]], *, timeout: float,
                        timeout_error: Type[GenerationTimeoutError], **params: Any) -> GenerationResult:
        started = time.time()
        try:
            res = await asyncio.wait_for(
                self.client.chat.completions.create(model=self.model, messages=messages, **params),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, APITimeoutError):
            self.metrics.record_llm_call(0, 0, self.model, timeout=True)
            raise timeout_error(f"No response from {self.model} within {timeout:.0f}s")
        except RateLimitError as e:
            raise NetworkError(f"Rate limited by provider (429): {e}", status=429)
        except APIConnectionError as e:
            raise NetworkError(f"Network error talking to provider: {e}")
        except APIStatusError as e:
            if e.status_code == 503:
                raise ModelUnavailableError()
            raise

        choice = res.choices[0] if res.choices else None
        text = (choice.message.content or "") if choice is not None else ""
        usage = getattr(res, "usage", None)
        tokens_in = getattr(usage, "prompt_tokens", 0) or 0
        tokens_out = getattr(usage, "completion_tokens", 0) or 0
        self.metrics.record_llm_call(tokens_in, tokens_out, self.model)
        logger.debug(f"{self.model} responded in {time.time() - started:.2f}s ({len(text)} chars)")

        if not text.strip():
            raise EmptyResponseError()
        return GenerationResult(
            text=text,
            finish_reason=getattr(choice, "finish_reason", None),
            tokens_in=tokens_in,
            tokens_out=tokens_out,
        )
