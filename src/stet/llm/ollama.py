"""Ollama HTTP client."""

import asyncio
import contextlib
import logging
import random
import threading
from dataclasses import dataclass, field

import requests

from ..constants import DEFAULT_LLM_TIMEOUT, DEFAULT_OLLAMA_BASE_URL
from ..errors import BadRequest, ModelNotFound, Unreachable
from .base import GenerateOptions, GenerateResult, LLMClient

logger = logging.getLogger(__name__)

CHECK_TIMEOUT = 10.0


@dataclass
class RetryConfig:
    """Exponential backoff for transport failures and 5xx responses."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 16.0
    backoff_multiplier: float = 2.0
    jitter_ratio: float = 0.15
    retryable_status_codes: set[int] = field(default_factory=lambda: {500, 502, 503, 504})

    def delay(self, attempt: int) -> float:
        """Backoff before retry ``attempt`` (0-based), jittered."""
        base = min(self.initial_delay * (self.backoff_multiplier**attempt), self.max_delay)
        if self.jitter_ratio <= 0 or base <= 0:
            return base
        spread = base * self.jitter_ratio
        return max(0.0, base + random.uniform(-spread, spread))


class _RetryableError(Exception):
    pass


async def _run_detached(func, *args):
    """Run blocking ``func(*args)`` on a daemon thread and await its result.

    Cancelling the await returns immediately. The abandoned request runs out
    on its own thread (bounded by its timeout) and never holds up event loop
    or interpreter shutdown.
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def settle(setter, value):
        if not future.done():
            setter(value)

    def target():
        try:
            result = func(*args)
        except Exception as e:
            outcome = (future.set_exception, e)
        else:
            outcome = (future.set_result, result)
        # the loop may already be closed when a cancelled request finishes
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(settle, *outcome)

    threading.Thread(target=target, name="stet-ollama-request", daemon=True).start()
    return await future


class OllamaClient(LLMClient):
    """Client for a local Ollama server.

    Blocking ``requests`` calls run on detached daemon threads, so
    cancelling ``generate`` returns without waiting for the server. Backoff
    sleeps are awaited and cancellation pre-empts pending retries.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_OLLAMA_BASE_URL,
        timeout: float = DEFAULT_LLM_TIMEOUT,
        retry_config: RetryConfig | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig()

    @property
    def name(self) -> str:
        return "ollama"

    def _post(self, path: str, payload: dict, timeout: float) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = requests.post(url, json=payload, timeout=timeout)
        except requests.RequestException as e:
            raise _RetryableError(f"POST {url}: {e}") from e
        return self._decode(resp, url)

    def _get(self, path: str, timeout: float) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = requests.get(url, timeout=timeout)
        except requests.RequestException as e:
            raise _RetryableError(f"GET {url}: {e}") from e
        return self._decode(resp, url)

    def _decode(self, resp, url: str) -> dict:
        if resp.status_code in self.retry_config.retryable_status_codes or resp.status_code >= 500:
            raise _RetryableError(f"{url}: HTTP {resp.status_code}: {resp.text[:200]}")
        if 400 <= resp.status_code < 500:
            raise BadRequest(f"{url}: HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            data = resp.json()
        except ValueError as e:
            raise BadRequest(f"{url}: invalid JSON response: {e}") from e
        if not isinstance(data, dict):
            raise BadRequest(f"{url}: unexpected response type {type(data).__name__}")
        return data

    async def _with_retries(self, func, *args) -> dict:
        cfg = self.retry_config
        last_error: Exception | None = None
        for attempt in range(cfg.max_retries + 1):
            try:
                return await _run_detached(func, *args)
            except _RetryableError as e:
                last_error = e
                if attempt >= cfg.max_retries:
                    break
                delay = cfg.delay(attempt)
                logger.warning(f"Ollama request failed (attempt {attempt + 1}/{cfg.max_retries + 1}): {e}; retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
        raise Unreachable(f"ollama unreachable at {self.base_url}: {last_error}") from last_error

    async def generate(self, model: str, system: str, prompt: str, options: GenerateOptions) -> GenerateResult:
        payload = {
            "model": model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": options.temperature, "num_ctx": options.num_ctx},
            "keep_alive": options.keep_alive,
        }
        if system:
            payload["system"] = system
        if options.format:
            payload["format"] = options.format
        data = await self._with_retries(self._post, "/api/generate", payload, self.timeout)
        return GenerateResult.from_dict(data)

    async def list_models(self) -> list[str]:
        data = await self._with_retries(self._get, "/api/tags", CHECK_TIMEOUT)
        return [m.get("name", "") for m in data.get("models") or [] if isinstance(m, dict)]

    async def check(self, model: str) -> None:
        names = await self.list_models()
        wanted = {model, f"{model}:latest"} if ":" not in model else {model}
        if not wanted & set(names):
            raise ModelNotFound(f"model {model!r} not found on {self.base_url}")

    async def show(self, model: str) -> int:
        """The model's context length from ``/api/show``; 0 when not reported."""
        data = await self._with_retries(self._post, "/api/show", {"model": model}, CHECK_TIMEOUT)
        info = data.get("model_info") or {}
        for key, value in info.items():
            if key.endswith(".context_length") and isinstance(value, int):
                return value
        return 0
