"""OpenAI client wrapper for schema-constrained extraction calls."""

import json
import logging
from typing import Any, Dict, Optional

from openai import AsyncOpenAI

from pricewatch import metrics
from pricewatch.config import settings

logger = logging.getLogger(__name__)


class LLMNotConfiguredError(RuntimeError):
    """No API key is configured."""


class LLMService:
    """
    Thin wrapper over AsyncOpenAI.

    Every call uses strict JSON-schema output, so the reply is either a
    parseable object matching the schema or a refusal.
    """

    def __init__(self):
        self._client: Optional[AsyncOpenAI] = None

    @property
    def is_configured(self) -> bool:
        return bool(settings.openai_api_key)

    async def _get_client(self) -> AsyncOpenAI:
        """Get or create OpenAI client."""
        if self._client is None:
            if not self.is_configured:
                raise LLMNotConfiguredError("OpenAI API key not configured")
            self._client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                timeout=settings.llm_timeout_seconds,
                max_retries=1,
            )
        return self._client

    async def call_llm_structured(
        self,
        prompt: str,
        response_schema: Dict[str, Any],
        schema_name: str,
        system_prompt: str = "",
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Call the model and return the parsed object.

        Args:
            prompt: User prompt
            response_schema: JSON schema the response must match
            schema_name: Name reported to the API for the schema
            system_prompt: Optional system instructions
            model: Model name (defaults to settings.llm_model)

        Raises:
            LLMNotConfiguredError: No API key
            ValueError: The model refused or returned invalid JSON
        """
        model = model or settings.llm_model
        client = await self._get_client()

        messages = [{"role": "user", "content": prompt}]
        if system_prompt:
            messages.insert(0, {"role": "system", "content": system_prompt})

        try:
            response = await client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=settings.llm_temperature,
                max_tokens=settings.llm_max_tokens,
                response_format={
                    "type": "json_schema",
                    "json_schema": {"name": schema_name, "schema": response_schema, "strict": True},
                },
            )
        except Exception as e:
            metrics.llm_requests_total.labels(model=model, status="error").inc()
            logger.error(f"{model} call failed: {e}")
            raise

        if response.usage:
            metrics.llm_tokens_total.labels(model=model, kind="prompt").inc(response.usage.prompt_tokens)
            metrics.llm_tokens_total.labels(model=model, kind="completion").inc(response.usage.completion_tokens)

        message = response.choices[0].message
        if getattr(message, "refusal", None):
            metrics.llm_requests_total.labels(model=model, status="refused").inc()
            raise ValueError(f"Model refused the request: {message.refusal}")

        try:
            data = json.loads(message.content or "")
        except json.JSONDecodeError as e:
            metrics.llm_requests_total.labels(model=model, status="invalid_json").inc()
            logger.warning(f"Unparseable {schema_name} reply: {(message.content or '')[:200]!r}")
            raise ValueError(f"Invalid JSON from model: {e}") from e

        metrics.llm_requests_total.labels(model=model, status="success").inc()
        return data

    async def close(self):
        """Close connections."""
        if self._client:
            await self._client.close()
            self._client = None


# Global LLM service instance
llm_service = LLMService()
