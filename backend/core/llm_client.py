import os
import json
import time
import logging
import threading
from typing import List, Optional, Dict, Any
from enum import Enum

from core.pricing import calculate_cost
from models import LLMUsage


class LLMError(RuntimeError):
    """Raised when the remote generative service fails."""


class LLMProvider(str, Enum):
    OPENAI = "openai"
    MINIMAX = "minimax"
    DEEPSEEK = "deepseek"


class LLMConfig:
    def __init__(
        self,
        provider: LLMProvider = LLMProvider.DEEPSEEK,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        chat_max_tokens: Optional[int] = None,
        chat_temperature: Optional[float] = None,
        request_timeout: Optional[float] = None,
    ):
        self.provider = provider
        default_key = os.getenv("OPENAI_API_KEY")
        if provider == LLMProvider.MINIMAX:
            default_key = os.getenv("MINIMAX_API_KEY") or default_key
        elif provider == LLMProvider.DEEPSEEK:
            default_key = os.getenv("DEEPSEEK_API_KEY") or default_key
        self.api_key = default_key if api_key is None else api_key
        default_chat_max_tokens = _safe_positive_int(os.getenv("LLM_MAX_TOKENS"), 4000)
        default_chat_temperature = _safe_temperature(os.getenv("LLM_TEMPERATURE"), 0.3)

        if provider == LLMProvider.MINIMAX:
            self.base_url = base_url or "https://api.minimaxi.com/v1"
            self.model = model or "MiniMax-M2.5"
        elif provider == LLMProvider.DEEPSEEK:
            self.base_url = base_url or os.getenv("DEEPSEEK_BASE_URL") or "https://api.deepseek.com"
            self.model = model or "deepseek-chat"
            default_chat_max_tokens = _safe_positive_int(os.getenv("DEEPSEEK_MAX_TOKENS"), 8192)
        else:
            self.base_url = base_url or "https://api.openai.com/v1"
            self.model = model or "gpt-4-turbo-preview"

        self.chat_max_tokens = _safe_positive_int(chat_max_tokens, default_chat_max_tokens)
        self.chat_temperature = _safe_temperature(chat_temperature, default_chat_temperature)
        self.request_timeout = float(request_timeout) if request_timeout else 120.0


def _safe_positive_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(value)
        if parsed > 0:
            return parsed
    except Exception:
        pass
    return fallback


def _safe_temperature(value: Any, fallback: float) -> float:
    try:
        parsed = float(value)
        if parsed < 0:
            return 0.0
        if parsed > 2:
            return 2.0
        return parsed
    except Exception:
        return fallback


class LLMClient:
    """Chat client over an OpenAI-compatible API.

    Without an API key the client runs offline and returns empty text, which
    the correction pipeline treats as a generation anomaly. Remote failures
    raise ``LLMError``. Token usage and cost accumulate in ``usage``.
    """

    def __init__(self, config: LLMConfig):
        self.config = config
        self._client = None
        self._logger = logging.getLogger("galley.llm")
        self._offline_warnings: set[str] = set()
        self._usage_lock = threading.Lock()
        self.usage = LLMUsage(model=config.model)

    @property
    def is_remote(self) -> bool:
        return bool(self.config.api_key)

    def _warn_offline_once(self, reason: str):
        if reason in self._offline_warnings:
            return
        self._offline_warnings.add(reason)
        self._logger.warning(
            "llm offline fallback provider=%s model=%s reason=%s",
            self.config.provider.value,
            self.config.model,
            reason,
        )

    def _get_client(self):
        if self._client is not None:
            return self._client

        from openai import OpenAI
        self._client = OpenAI(
            api_key=self.config.api_key,
            base_url=self.config.base_url,
            timeout=self.config.request_timeout,
        )
        return self._client

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        if not self.config.api_key:
            self._warn_offline_once("missing_api_key")
            return self._offline_chat(messages)

        started = time.perf_counter()
        actual_max_tokens = _safe_positive_int(max_tokens, self.config.chat_max_tokens)
        actual_temperature = _safe_temperature(temperature, self.config.chat_temperature)
        try:
            client = self._get_client()
            response = client.chat.completions.create(
                model=self.config.model,
                messages=messages,
                temperature=actual_temperature,
                max_tokens=actual_max_tokens,
            )
        except Exception as exc:
            self._logger.warning(
                "llm chat remote failed provider=%s model=%s error=%s",
                self.config.provider.value,
                self.config.model,
                exc,
            )
            raise LLMError(str(exc)) from exc

        content = ""
        choices = getattr(response, "choices", None) or []
        if choices:
            content = getattr(choices[0].message, "content", None) or ""
        self._record_usage(getattr(response, "usage", None))
        self._logger.info(
            "llm chat remote success provider=%s model=%s temperature=%.2f latency_ms=%.2f chars=%d",
            self.config.provider.value,
            self.config.model,
            actual_temperature,
            (time.perf_counter() - started) * 1000,
            len(content),
        )
        return content

    def _record_usage(self, usage: Any):
        input_tokens = _safe_positive_int(getattr(usage, "prompt_tokens", 0), 0)
        output_tokens = _safe_positive_int(getattr(usage, "completion_tokens", 0), 0)
        with self._usage_lock:
            self.usage.calls += 1
            self.usage.input_tokens += input_tokens
            self.usage.output_tokens += output_tokens
            self.usage.cost_usd = calculate_cost(
                self.config.model,
                self.usage.input_tokens,
                self.usage.output_tokens,
            )

    def reset_usage(self) -> LLMUsage:
        with self._usage_lock:
            previous = self.usage
            self.usage = LLMUsage(model=self.config.model)
        return previous

    def _offline_chat(self, messages: List[Dict[str, str]]) -> str:
        # Offline mode never invents manuscript text.
        return ""


def create_llm_client(
    provider: str = "deepseek",
    **kwargs
) -> LLMClient:
    candidate = (provider or "deepseek").strip().lower()
    try:
        llm_provider = LLMProvider(candidate)
    except ValueError:
        logging.getLogger("galley.llm").warning(
            "unknown llm provider=%s fallback=deepseek",
            provider,
        )
        llm_provider = LLMProvider.DEEPSEEK
    config = LLMConfig(provider=llm_provider, **kwargs)
    return LLMClient(config)


def parse_json_object(raw_output: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse the first JSON object in an LLM response, or return None."""
    if not raw_output:
        return None

    # Strip markdown code fences if present
    text = raw_output.strip()
    if text.startswith("```"):
        inner = []
        in_block = False
        for line in text.splitlines():
            if line.startswith("```") and not in_block:
                in_block = True
                continue
            if line.startswith("```") and in_block:
                break
            if in_block:
                inner.append(line)
        text = "\n".join(inner).strip()

    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return None

    try:
        data = json.loads(text[start:end + 1])
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    return data
