"""
Provider-agnostic LLM client for the feedback extractor.

Supports Anthropic, OpenAI, and Google Gemini with a shared text-generation
interface. Anthropic is the default; the others are optional installs.
"""

from __future__ import annotations

import logging
from typing import Optional

from .config import LLMConfig

logger = logging.getLogger("feedbot.common.llm_client")


class LLMClient:
    """Unified text generation client across LLM providers."""

    def __init__(
        self,
        provider: str = "anthropic",
        model: str = "",
        anthropic_api_key: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        google_api_key: Optional[str] = None,
    ) -> None:
        self.provider = (provider or "anthropic").lower()
        self.model = model
        self._client = None

        if self.provider == "anthropic":
            if not anthropic_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import anthropic

                self._client = anthropic.Anthropic(api_key=anthropic_api_key)
            except Exception as e:
                logger.warning("Failed to initialize Anthropic client: %s", e)
            return

        if self.provider == "openai":
            if not openai_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                from openai import OpenAI

                self._client = OpenAI(api_key=openai_api_key)
            except ImportError:
                logger.warning("openai package not installed (pip install feedbot[openai])")
            except Exception as e:
                logger.warning("Failed to initialize OpenAI client: %s", e)
            return

        if self.provider == "google":
            if not google_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import google.generativeai as genai

                genai.configure(api_key=google_api_key)
                self._client = genai
            except ImportError:
                logger.warning("google-generativeai package not installed (pip install feedbot[google])")
            except Exception as e:
                logger.warning("Failed to initialize Gemini client: %s", e)
            return

        logger.warning("Unsupported LLM provider: %s", self.provider)

    @classmethod
    def from_config(cls, llm_config: LLMConfig) -> "LLMClient":
        return cls(
            provider=llm_config.provider,
            model=llm_config.model,
            anthropic_api_key=llm_config.anthropic_api_key or None,
            openai_api_key=llm_config.openai_api_key or None,
            google_api_key=llm_config.google_api_key or None,
        )

    @property
    def is_available(self) -> bool:
        return self._client is not None

    def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 500,
        timeout: float = 30.0,
    ) -> str:
        """Send a single-turn prompt and return the stripped text reply.

        Raises:
            RuntimeError: if no provider client could be initialised
        """
        if not self.is_available:
            raise RuntimeError("LLM client is not available")

        if self.provider == "anthropic":
            kwargs = {}
            if system:
                kwargs["system"] = system
            response = self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                messages=[{"role": "user", "content": prompt}],
                timeout=timeout,
                **kwargs,
            )
            # Replies may lead with non-text blocks; take the first text one
            for block in response.content:
                if getattr(block, "type", "text") == "text":
                    return block.text.strip()
            return ""

        if self.provider == "openai":
            messages = []
            if system:
                messages.append({"role": "system", "content": system})
            messages.append({"role": "user", "content": prompt})
            response = self._client.chat.completions.create(
                model=self.model,
                max_tokens=max_tokens,
                messages=messages,
                timeout=timeout,
            )
            return (response.choices[0].message.content or "").strip()

        if self.provider == "google":
            kwargs = {"model_name": self.model}
            if system:
                kwargs["system_instruction"] = system
            model = self._client.GenerativeModel(**kwargs)
            response = model.generate_content(
                prompt,
                generation_config={"max_output_tokens": max_tokens},
                request_options={"timeout": timeout},
            )
            return response.text.strip()

        raise RuntimeError(f"Unsupported LLM provider: {self.provider}")
