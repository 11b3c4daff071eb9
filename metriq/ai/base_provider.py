"""METRIQ — Abstract Code-Generation Provider."""

from abc import ABC, abstractmethod


class CodeGenerationProvider(ABC):
    """Abstract base for the language model that writes transformer code.

    The pipeline only needs one request/response call; no streaming.
    """

    name: str = "base"

    @abstractmethod
    async def generate(
        self, system_prompt: str, user_prompt: str, temperature: float = 0.1
    ) -> str:
        """Return the raw generated text for one prompt.

        Args:
            system_prompt: Role and output contract for the model.
            user_prompt: Per-call context (sample data, previous failure).
            temperature: Sampling temperature. Low for first attempts,
                         slightly higher when asking for a fix.

        Returns:
            Model output, possibly wrapped in markdown fences.
        """
        ...

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is configured and ready."""
        ...
