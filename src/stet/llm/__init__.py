"""LLM client abstraction layer."""

from .base import GenerateOptions, GenerateResult, LLMClient
from .ollama import OllamaClient, RetryConfig


def create_client(
    base_url: str,
    timeout: float,
    retry_config: RetryConfig | None = None,
) -> LLMClient:
    """Factory function to create the LLM client for a run.

    Args:
        base_url: Ollama server URL
        timeout: Per-call deadline in seconds
        retry_config: Transport retry policy; defaults to 3 retries with backoff

    Returns:
        LLMClient instance
    """
    return OllamaClient(base_url=base_url, timeout=timeout, retry_config=retry_config)


__all__ = ["GenerateOptions", "GenerateResult", "LLMClient", "OllamaClient", "RetryConfig", "create_client"]
