import logging
from typing import Dict, List, Optional, Protocol, Sequence, Type, TypeVar
from pydantic import BaseModel
import openai
from openai.types.chat import ChatCompletionMessageParam

from ..errors import (
    CollaboratorAuthError,
    CollaboratorError,
    CollaboratorQuotaError,
    CollaboratorTimeoutError,
)
from ..models.answers import DraftAnswer, GenerationResult
from ..models.queries import ChatMessage

logger = logging.getLogger("PediatricRAG")

# Type definitions
ResponseModel = TypeVar("ResponseModel", bound=BaseModel)

# Only the most recent turns of a conversation are forwarded to a collaborator.
MAX_HISTORY_MESSAGES = 6


def translate_openai_error(error: Exception, service: str) -> CollaboratorError:
    """Map an OpenAI SDK exception onto the engine's collaborator error types."""
    if isinstance(error, openai.APITimeoutError):
        return CollaboratorTimeoutError(f"{service} request timed out", service=service)
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return CollaboratorAuthError(f"{service} rejected credentials: {error}", service=service)
    if isinstance(error, openai.RateLimitError):
        code = getattr(error, "code", None)
        if code == "insufficient_quota":
            return CollaboratorQuotaError(f"{service} quota exhausted", service=service)
        return CollaboratorError(f"{service} rate limited: {error}", service=service)
    return CollaboratorError(f"{service} call failed: {error}", service=service)


def _usage_dict(usage) -> Dict[str, int]:
    if usage is None:
        return {}
    return {
        "prompt_tokens": usage.prompt_tokens or 0,
        "completion_tokens": usage.completion_tokens or 0,
        "total_tokens": usage.total_tokens or 0,
    }


def build_messages(
    system_prompt: str,
    context: str,
    history: Optional[Sequence[ChatMessage]] = None,
) -> List[ChatCompletionMessageParam]:
    """System prompt, the last few history turns, then the context-bearing user turn."""
    messages: List[ChatCompletionMessageParam] = [
        {"role": "system", "content": system_prompt}
    ]
    for message in list(history or [])[-MAX_HISTORY_MESSAGES:]:
        messages.append({"role": message.role, "content": message.content})
    messages.append({"role": "user", "content": context})
    return messages


class GenerationService(Protocol):
    """Contract for primary and secondary generation collaborators."""

    name: str
    timeout: float

    async def generate(
        self,
        system_prompt: str,
        context: str,
        history: Optional[Sequence[ChatMessage]] = None,
    ) -> GenerationResult: ...

    async def ping(self) -> None: ...


class LLMParserService:
    """Handles making calls to and parsing responses from OpenAI chat completions."""

    def __init__(self, async_client: "openai.AsyncOpenAI", service: str = "openai"):
        self.async_client = async_client
        self.service = service

    async def parse_completion(
        self,
        *,  # Force keyword arguments
        model: str,
        messages: List[ChatCompletionMessageParam],
        response_format: Type[ResponseModel],
        temperature: float,
    ) -> tuple[ResponseModel, Dict[str, int]]:
        """
        Calls the OpenAI API using the structured-output parse helper.

        Args:
            model: The model name to use.
            messages: The list of messages for the prompt.
            response_format: The Pydantic model class for parsing the response.
            temperature: The sampling temperature.

        Returns:
            The parsed Pydantic model instance and the token usage.

        Raises:
            CollaboratorError: If the call fails or the response cannot be parsed.
        """
        format_name = getattr(response_format, "__name__", str(response_format))
        logger.debug(
            f"Calling LLM (model={model}, temp={temperature}, response_format={format_name})"
        )
        params = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "response_format": response_format,
        }
        if model.startswith("o"):
            # reasoning models reject temperature
            params.pop("temperature")

        try:
            response = await self.async_client.chat.completions.parse(**params)
        except openai.OpenAIError as e:
            raise translate_openai_error(e, self.service) from e

        parsed_response = response.choices[0].message.parsed
        if parsed_response is None:
            refusal = response.choices[0].message.refusal
            raise CollaboratorError(
                f"{self.service} returned no parsable {format_name}"
                + (f" (refusal: {refusal})" if refusal else ""),
                service=self.service,
            )
        return parsed_response, _usage_dict(response.usage)


class StructuredAnswerService:
    """
    Primary generation collaborator.

    Requests a DraftAnswer so the model reports its own confidence alongside the text.
    """

    def __init__(
        self,
        async_client: "openai.AsyncOpenAI",
        model: str = "gpt-4o-mini",
        temperature: float = 0.3,
        timeout: float = 30.0,
        name: str = "primary_generation",
    ):
        self.async_client = async_client
        self.model = model
        self.temperature = temperature
        self.timeout = timeout
        self.name = name
        self.parser_service = LLMParserService(async_client, service=name)

    async def generate(
        self,
        system_prompt: str,
        context: str,
        history: Optional[Sequence[ChatMessage]] = None,
    ) -> GenerationResult:
        draft, usage = await self.parser_service.parse_completion(
            model=self.model,
            messages=build_messages(system_prompt, context, history),
            response_format=DraftAnswer,
            temperature=self.temperature,
        )
        if not draft.answer.strip():
            raise CollaboratorError(f"{self.name} returned an empty answer", service=self.name)
        return GenerationResult(
            text=draft.answer,
            usage=usage,
            confidence=draft.confidence,
            model=self.model,
        )

    async def ping(self) -> None:
        try:
            await self.async_client.models.retrieve(self.model)
        except openai.OpenAIError as e:
            raise translate_openai_error(e, self.name) from e


class ChatCompletionService:
    """Plain chat-completion collaborator, used for the enhancement pass."""

    def __init__(
        self,
        async_client: "openai.AsyncOpenAI",
        model: str = "gpt-4o-mini",
        temperature: float = 0.3,
        timeout: float = 20.0,
        name: str = "secondary_generation",
    ):
        self.async_client = async_client
        self.model = model
        self.temperature = temperature
        self.timeout = timeout
        self.name = name

    async def generate(
        self,
        system_prompt: str,
        context: str,
        history: Optional[Sequence[ChatMessage]] = None,
    ) -> GenerationResult:
        try:
            response = await self.async_client.chat.completions.create(
                model=self.model,
                messages=build_messages(system_prompt, context, history),
                temperature=self.temperature,
            )
        except openai.OpenAIError as e:
            raise translate_openai_error(e, self.name) from e

        content = response.choices[0].message.content
        if not content or not content.strip():
            raise CollaboratorError(f"{self.name} returned an empty response", service=self.name)
        return GenerationResult(
            text=content,
            usage=_usage_dict(response.usage),
            model=self.model,
        )

    async def ping(self) -> None:
        try:
            await self.async_client.models.retrieve(self.model)
        except openai.OpenAIError as e:
            raise translate_openai_error(e, self.name) from e
