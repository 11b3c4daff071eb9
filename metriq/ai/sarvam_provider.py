"""METRIQ — Sarvam AI Provider."""

from sarvamai import AsyncSarvamAI

from metriq.ai.base_provider import CodeGenerationProvider
from metriq.config import settings
from metriq.core.logging import get_logger

logger = get_logger("ai.sarvam")


class SarvamProvider(CodeGenerationProvider):
    """Sarvam AI provider for transformer code generation (model: sarvam-m)."""

    name = "sarvam"

    def __init__(self):
        self.client = (
            AsyncSarvamAI(api_subscription_key=settings.sarvam_api_key)
            if settings.sarvam_api_key
            else None
        )

    def is_available(self) -> bool:
        return self.client is not None and bool(settings.sarvam_api_key)

    async def generate(
        self, system_prompt: str, user_prompt: str, temperature: float = 0.1
    ) -> str:
        if not self.is_available():
            raise RuntimeError("Sarvam provider not configured")

        try:
            response = await self.client.chat.completions(
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=temperature,
                max_tokens=settings.codegen_max_tokens,
            )
            return response.choices[0].message.content or ""
        except Exception as e:
            logger.error(f"Sarvam generation failed: {e}")
            raise
