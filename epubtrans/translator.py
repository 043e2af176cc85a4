from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from openai import OpenAI, OpenAIError

from .utils import strip_code_fences


class ServiceError(RuntimeError):
    """Transport or service-level failure of the transformation endpoint."""


class MissingApiKeyError(RuntimeError):
    """Raised when a required provider API key is missing."""


@dataclass(frozen=True)
class RetryPolicy:
    """Bounds for one-shot structured requests (planner, heading normalization, seed glossary)."""

    max_attempts: int = 3
    retry_backoff_seconds: float = 2.0


class AuditTrail:
    """Lightweight audit collector for prompt hashes and pipeline decisions."""

    def __init__(self) -> None:
        self.records: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def record(self, kind: str, payload: Dict[str, Any]) -> None:
        entry = {"kind": kind, **payload}
        with self._lock:
            self.records.append(entry)

    def of_kind(self, kind: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [rec for rec in self.records if rec.get("kind") == kind]

    def as_list(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self.records)


class BaseTranslator(Protocol):
    def transform(self, user_content: str, system_instruction: str, strict_json: bool = False) -> str:
        ...


@dataclass
class ProviderConfig:
    model: str
    base_url: Optional[str] = None
    api_key_env: str = "OPENAI_API_KEY"
    concurrency: int = 1
    temperature: float = 0.3
    timeout: float = 600.0


# OpenAI-compatible endpoints. Concurrency is the number of simultaneous requests the provider tolerates.
PROVIDERS: Dict[str, ProviderConfig] = {
    "openai": ProviderConfig(model="gpt-4.1-mini", api_key_env="OPENAI_API_KEY", concurrency=3),
    "qwen": ProviderConfig(
        model="qwen3-max",
        base_url="https://dashscope.aliyuncs.com/compatible-mode/v1",
        api_key_env="QWEN_API_KEY",
        concurrency=5,
    ),
    "mimo": ProviderConfig(
        model="mimo-v2-flash",
        base_url="https://api.xiaomimimo.com/v1",
        api_key_env="MIMO_API_KEY",
        concurrency=5,
    ),
}


class RateLimiter:
    """Simple thread-safe rate limiter (requests per minute)."""

    def __init__(self, requests_per_minute: Optional[int] = None):
        self.requests_per_minute = requests_per_minute or 0
        self.interval = 60.0 / self.requests_per_minute if self.requests_per_minute > 0 else 0.0
        self._lock = threading.Lock()
        self._last_ts = 0.0

    def wait(self) -> None:
        if self.interval <= 0:
            return
        with self._lock:
            now = time.monotonic()
            delta = now - self._last_ts
            if delta < self.interval:
                time.sleep(self.interval - delta)
            self._last_ts = time.monotonic()


class OpenAITranslator:
    """
    Chat-completions client for any OpenAI-compatible endpoint.

    Requires:
      - `openai` python package
      - the provider's API key in env (see ``ProviderConfig.api_key_env``) or provided.
    """

    def __init__(
        self,
        cfg: ProviderConfig,
        api_key: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.cfg = cfg
        self.api_key = api_key or os.getenv(cfg.api_key_env, "")
        if not self.api_key:
            raise MissingApiKeyError(
                f"{cfg.api_key_env} is missing: set the environment variable or add it to your .env."
            )
        self.rate_limiter = rate_limiter
        self._client = OpenAI(api_key=self.api_key, base_url=cfg.base_url, timeout=cfg.timeout)

    def transform(self, user_content: str, system_instruction: str, strict_json: bool = False) -> str:
        if self.rate_limiter:
            self.rate_limiter.wait()
        options: Dict[str, Any] = {}
        if strict_json:
            options["response_format"] = {"type": "json_object"}
        try:
            resp = self._client.chat.completions.create(
                model=self.cfg.model,
                messages=[
                    {"role": "system", "content": system_instruction},
                    {"role": "user", "content": user_content},
                ],
                temperature=self.cfg.temperature,
                **options,
            )
        except OpenAIError as exc:
            raise ServiceError(f"{self.cfg.model}: {exc}") from exc

        if not resp.choices:
            raise ServiceError(f"{self.cfg.model}: empty choices in response")
        content = resp.choices[0].message.content or ""
        return content.strip()


_NODE_RE = re.compile(r'<node id="([^"]+)"[^>]*>([\s\S]*?)</node>', re.IGNORECASE)


class DummyTranslator:
    """Offline translator for testing/dev. Does not translate; echoes nodes and answers JSON requests trivially."""

    def transform(self, user_content: str, system_instruction: str, strict_json: bool = False) -> str:
        if strict_json:
            return json.dumps(self._json_answer(user_content), ensure_ascii=False)
        return "\n".join(f'<node id="{nid}">{content}</node>' for nid, content in _NODE_RE.findall(user_content))

    @staticmethod
    def _json_answer(user_content: str) -> Any:
        try:
            data = json.loads(user_content)
        except json.JSONDecodeError:
            return {"glossary": []}
        if isinstance(data, list) and all(isinstance(x, str) for x in data):
            return {x: x for x in data}
        if isinstance(data, list):
            return {"order": [x.get("id") for x in data if isinstance(x, dict)], "tocId": None}
        return {"glossary": []}


def call_transform(
    translator: BaseTranslator,
    user_content: str,
    system_instruction: str,
    strict_json: bool = False,
    logger: Optional[logging.Logger] = None,
) -> str:
    """
    Invoke the transformation capability.

    Empty or whitespace-only content is a no-op returning "" without calling the service.
    Raises ServiceError on failure.
    """
    if not user_content or not user_content.strip():
        return ""
    if logger:
        logger.debug("REQUEST\nSYSTEM:\n%s\n\nUSER:\n%s", system_instruction, user_content)
    try:
        response = translator.transform(user_content, system_instruction, strict_json)
    except ServiceError as exc:
        if logger:
            logger.warning("transform failed: %s", exc)
        raise
    if logger:
        logger.debug("RESPONSE\n%s", response)
    return strip_code_fences(response or "")


def build_translator(provider: str, cfg: Dict[str, Any], requests_per_minute: int = 0) -> Any:
    """Instantiate the configured provider. ``cfg`` is the ``translation`` section of the config file."""
    provider = provider.lower()
    if provider == "dummy":
        return DummyTranslator()
    if provider not in PROVIDERS:
        raise ValueError(f"Unknown translation provider: {provider}")

    base = PROVIDERS[provider]
    pcfg = cfg.get("providers", {}).get(provider, {})
    provider_cfg = ProviderConfig(
        model=pcfg.get("model", base.model),
        base_url=pcfg.get("base_url", base.base_url),
        api_key_env=pcfg.get("api_key_env", base.api_key_env),
        concurrency=int(pcfg.get("concurrency", base.concurrency)),
        temperature=float(pcfg.get("temperature", base.temperature)),
        timeout=float(pcfg.get("timeout", base.timeout)),
    )
    limiter = RateLimiter(requests_per_minute)
    return OpenAITranslator(cfg=provider_cfg, rate_limiter=limiter)


def provider_concurrency(provider: str, cfg: Dict[str, Any]) -> int:
    provider = provider.lower()
    if provider == "dummy":
        return int(cfg.get("concurrency", 1))
    base = PROVIDERS.get(provider)
    default = base.concurrency if base else 1
    return int(cfg.get("providers", {}).get(provider, {}).get("concurrency", default))
