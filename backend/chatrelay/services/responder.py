"""Responder gateway: automated replies from the OpenAI Responses API."""
import openai
from typing import Any, Dict, List, Optional
import time

import structlog

logger = structlog.get_logger()

PLACEHOLDER_KEYS = {"", "your_openai_api_key_here"}


class ResponderError(Exception):
    """Base class for automated responder failures."""
    pass


class ConfigurationError(ResponderError):
    """No usable API key is configured."""
    pass


class UpstreamError(ResponderError):
    """The provider answered with an error or an unexpected payload."""
    pass


class TransportError(ResponderError):
    """No response was received from the provider."""
    pass


class ResponderGateway:
    """Service for generating replies on behalf of an administrator."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4.1-mini",
        instructions: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[Any] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.instructions = instructions
        self.timeout = timeout
        self._client = client

    @property
    def configured(self) -> bool:
        return (self.api_key or "").strip() not in PLACEHOLDER_KEYS

    def _get_client(self) -> Any:
        """Get or create the OpenAI client."""
        if self._client is None:
            self._client = openai.AsyncOpenAI(
                api_key=self.api_key,
                timeout=self.timeout,
                max_retries=0
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.close()
            self._client = None

    @staticmethod
    def build_input(prompt: str, history: List[Dict[str, str]]) -> List[Dict[str, str]]:
        """
        Build the Responses API input list.

        Args:
            prompt: Latest visitor message
            history: Prior messages, oldest first, as {"role", "content"} with
                role "user" or "assistant"

        Returns:
            History followed by the prompt as the final user turn
        """
        return [
            *({"role": m["role"], "content": m["content"]} for m in history),
            {"role": "user", "content": prompt},
        ]

    @staticmethod
    def extract_text(response: Any) -> str:
        """Pull the reply from output[0].content[0].text or fail as malformed."""
        try:
            text = response.output[0].content[0].text
        except (AttributeError, IndexError, TypeError) as e:
            raise UpstreamError(f"Invalid response format from OpenAI: {e}") from e
        if not isinstance(text, str) or not text.strip():
            raise UpstreamError("Empty response text from OpenAI")
        return text.strip()

    async def generate(self, prompt: str, history: List[Dict[str, str]]) -> str:
        """
        Generate a reply to `prompt` given the conversation `history`.

        Raises:
            ConfigurationError: If no API key is configured
            UpstreamError: On a non-success or malformed provider response
            TransportError: If the provider could not be reached in time
        """
        if not self.configured:
            raise ConfigurationError("OpenAI API key is not configured")

        start_time = time.time()
        try:
            response = await self._get_client().responses.create(
                model=self.model,
                instructions=self.instructions,
                input=self.build_input(prompt, history)
            )
        except openai.APIStatusError as e:
            raise UpstreamError(f"OpenAI API error: {e.status_code} - {e.message}") from e
        except (openai.APIConnectionError, openai.APITimeoutError) as e:
            raise TransportError(f"No response received from OpenAI API: {e}") from e
        except openai.OpenAIError as e:
            raise UpstreamError(f"OpenAI client error: {e}") from e

        text = self.extract_text(response)
        logger.info(
            "responder_reply_generated",
            model=self.model,
            history_size=len(history),
            reply_length=len(text),
            latency_ms=int((time.time() - start_time) * 1000)
        )
        return text
