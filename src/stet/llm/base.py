"""Base class for LLM clients."""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from ..constants import DEFAULT_NUM_CTX, DEFAULT_TEMPERATURE, KEEP_ALIVE_DURING_RUN


@dataclass
class GenerateOptions:
    """Per-request generation options."""

    temperature: float = DEFAULT_TEMPERATURE
    num_ctx: int = DEFAULT_NUM_CTX
    # Seconds to keep the model loaded after the call; -1 keeps it indefinitely
    keep_alive: int = KEEP_ALIVE_DURING_RUN
    format: str = "json"


@dataclass
class GenerateResult:
    """Model response text plus the usage counters the pipeline sums."""

    response: str
    model: str = ""
    prompt_eval_count: int = 0
    prompt_eval_duration: int = 0
    eval_count: int = 0
    eval_duration: int = 0
    load_duration: int = 0
    total_duration: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "GenerateResult":
        return cls(
            response=data.get("response") or "",
            model=data.get("model") or "",
            prompt_eval_count=data.get("prompt_eval_count") or 0,
            prompt_eval_duration=data.get("prompt_eval_duration") or 0,
            eval_count=data.get("eval_count") or 0,
            eval_duration=data.get("eval_duration") or 0,
            load_duration=data.get("load_duration") or 0,
            total_duration=data.get("total_duration") or 0,
        )


class LLMClient(ABC):
    """Abstract base class for LLM clients."""

    @abstractmethod
    async def generate(self, model: str, system: str, prompt: str, options: GenerateOptions) -> GenerateResult:
        """Run one non-streaming completion.

        Args:
            model: Model name
            system: System prompt
            prompt: User prompt
            options: Generation options, including the keep-alive hint

        Returns:
            The full response with usage counters

        Raises:
            Unreachable: If the server cannot be reached after retries
            BadRequest: If the server rejects the request
        """
        pass

    @abstractmethod
    async def check(self, model: str) -> None:
        """Verify the server is reachable and ``model`` is available.

        Raises:
            Unreachable: If the server cannot be reached
            ModelNotFound: If the model is not installed
        """
        pass

    async def show(self, model: str) -> int:
        """The model's context length in tokens; 0 when unknown."""
        return 0

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the name of the LLM client."""
        pass
