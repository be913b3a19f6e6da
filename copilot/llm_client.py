"""
Copilot LLM Client Interface
============================

Provider-agnostic text generation.
Supports Gemini and Ollama (local), plus a mock for tests and offline use.

Every provider raises ProviderError on failure so the SuggestionEngine can
decide between retry, next provider and fallback.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Union

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from ollama import AsyncClient, ResponseError

from copilot.errors import ProviderError, ProviderErrorKind

logger = logging.getLogger(__name__)


@dataclass
class GenerationOptions:
    """Per-call generation settings."""
    max_tokens: int = 500
    temperature: float = 0.7


class Provider(Protocol):
    """
    Protocol for text-generation backends.
    All implementations must provide an async generate() method.
    """

    name: str

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        opts: Optional[GenerationOptions] = None,
    ) -> str:
        """Generate text; raise ProviderError on failure."""
        ...


class GeminiProvider:
    """Gemini implementation using google-generativeai."""

    name = "gemini"

    def __init__(self, api_key: str, model: str = "gemini-1.5-flash"):
        self.model_name = model
        genai.configure(api_key=api_key)

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        opts: Optional[GenerationOptions] = None,
    ) -> str:
        opts = opts or GenerationOptions()
        model = genai.GenerativeModel(model_name=self.model_name, system_instruction=system_prompt)
        config = genai.GenerationConfig(
            max_output_tokens=opts.max_tokens,
            temperature=opts.temperature,
        )

        try:
            response = await model.generate_content_async(user_prompt, generation_config=config)
        except google_exceptions.GoogleAPICallError as e:
            status = int(e.code) if e.code else 500
            raise ProviderError.from_status(self.name, status, str(e)) from e
        except google_exceptions.RetryError as e:
            raise ProviderError(self.name, ProviderErrorKind.TIMEOUT, str(e)) from e

        # Blocked responses come back without candidates/parts
        if not response.candidates or not response.candidates[0].content.parts:
            finish_reason = response.candidates[0].finish_reason if response.candidates else "UNKNOWN"
            raise ProviderError(self.name, ProviderErrorKind.CLIENT_ERROR, f"empty response (finish_reason={finish_reason})")

        return response.text


class OllamaProvider:
    """Local Ollama server via the official ollama AsyncClient."""

    name = "ollama"

    def __init__(self, host: Optional[str] = None, model: str = "llama3"):
        self.host = host
        self.model_name = model
        self.client = AsyncClient(host=host)

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        opts: Optional[GenerationOptions] = None,
    ) -> str:
        opts = opts or GenerationOptions()
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        try:
            response = await self.client.chat(
                model=self.model_name,
                messages=messages,
                options={"temperature": opts.temperature, "num_predict": opts.max_tokens},
            )
        except ResponseError as e:
            raise ProviderError.from_status(self.name, e.status_code or 500, e.error) from e
        except (ConnectionError, OSError) as e:
            raise ProviderError(self.name, ProviderErrorKind.UNAVAILABLE, str(e)) from e

        content = response["message"]["content"]
        if not content:
            raise ProviderError(self.name, ProviderErrorKind.CLIENT_ERROR, "empty response")
        return content


DEFAULT_MOCK_RESPONSE = (
    "• Use the STAR method (Situation, Task, Action, Result)\n"
    "• Quantify your achievements with metrics\n"
    "• Show cultural fit and values alignment\n"
    "• End with a thoughtful question about the role"
)


@dataclass
class MockProvider:
    """
    Mock provider for testing and offline mode.

    Scripted outcomes are consumed in order: a string is returned, an exception
    is raised. When the script runs out, `default_response` is returned.
    """
    name: str = "mock"
    script: List[Union[str, BaseException]] = field(default_factory=list)
    default_response: str = DEFAULT_MOCK_RESPONSE
    delay: float = 0.0
    calls: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        opts: Optional[GenerationOptions] = None,
    ) -> str:
        self.calls.append({"system": system_prompt, "user": user_prompt})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return self.default_response
