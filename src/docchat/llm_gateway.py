# /docchat/llm_gateway.py
"""
Resilient LLM call layer: prompt assembly, token ceiling enforcement, and a
bounded retry loop with linear backoff around the chat-completion provider.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol, Sequence

import openai
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .context_builder import build_context, build_system_prompt, build_user_message
from .document_manager import IngestedFile
from .errors import (
    LLMCallFailedError,
    MissingCredentialError,
    ProviderRateLimitError,
    TokenLimitExceededError,
)
from .observability import get_logger
from .tokenization import estimate_token_count

logger = get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class ProviderReply:
    text: str | None
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None


@dataclass(frozen=True)
class ChatResult:
    text: str
    tokens_used: int
    files_referenced: list[str] = field(default_factory=list)
    estimated_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    attempts: int = 1
    model: str = ""


class ChatProvider(Protocol):
    model_name: str

    async def complete(
        self,
        messages: Sequence[BaseMessage],
        *,
        max_tokens: int,
        temperature: float,
    ) -> ProviderReply:
        ...


class EmptyCompletionError(RuntimeError):
    """The provider answered without any generated text."""


class OpenAIChatProvider:
    """OpenAI chat completions through langchain; retries are left to the gateway."""

    def __init__(self, api_key: str, model_name: str = "gpt-3.5-turbo", timeout_s: float = 60.0):
        self.model_name = model_name
        self._llm = ChatOpenAI(
            model=model_name,
            api_key=api_key,
            timeout=timeout_s,
            max_retries=0,
        )

    async def complete(
        self,
        messages: Sequence[BaseMessage],
        *,
        max_tokens: int,
        temperature: float,
    ) -> ProviderReply:
        try:
            message = await self._llm.ainvoke(
                list(messages),
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except openai.RateLimitError as exc:
            raise ProviderRateLimitError(str(exc)) from exc

        content = message.content if isinstance(message.content, str) else ""
        usage = getattr(message, "usage_metadata", None) or {}
        return ProviderReply(
            text=content,
            input_tokens=usage.get("input_tokens"),
            output_tokens=usage.get("output_tokens"),
            total_tokens=usage.get("total_tokens"),
        )


class LLMGateway:
    """
    Wraps a ChatProvider with the request ceiling and retry policy.

    Attempts are numbered from 1; after a failed attempt `n` (other than the last)
    the gateway waits `n * retry_delay_s` before trying again.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model_name: str = "gpt-3.5-turbo",
        max_tokens_per_request: int = 4000,
        max_attempts: int = 3,
        retry_delay_s: float = 1.0,
        timeout_s: float = 60.0,
        provider: ChatProvider | None = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.api_key = api_key
        self.model_name = model_name
        self.max_tokens_per_request = int(max_tokens_per_request)
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay_s = float(retry_delay_s)
        self.timeout_s = float(timeout_s)
        self._provider = provider
        self._sleep = sleep

    def _get_provider(self) -> ChatProvider:
        if self._provider is None:
            if not self.api_key:
                raise MissingCredentialError("OPENAI_API_KEY")
            self._provider = OpenAIChatProvider(
                self.api_key,
                model_name=self.model_name,
                timeout_s=self.timeout_s,
            )
        return self._provider

    async def chat(
        self,
        prompt: str,
        files: Sequence[IngestedFile],
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> ChatResult:
        provider = self._get_provider()

        context_text = build_context(files)
        system_prompt = build_system_prompt(context_text)
        user_message = build_user_message(context_text, prompt)
        files_referenced = [file.display_name for file in files]

        estimated_tokens = estimate_token_count(system_prompt + user_message)
        if estimated_tokens > self.max_tokens_per_request:
            logger.warning(
                "token_limit_exceeded",
                estimated_tokens=estimated_tokens,
                limit=self.max_tokens_per_request,
            )
            raise TokenLimitExceededError(estimated_tokens, self.max_tokens_per_request)

        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_message)]
        last_error: BaseException | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                reply = await provider.complete(messages, max_tokens=max_tokens, temperature=temperature)
                if not reply.text:
                    raise EmptyCompletionError("No response content from the LLM provider")
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "llm_call_retry",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if attempt < self.max_attempts:
                    await self._sleep(self.retry_delay_s * attempt)
                continue

            tokens_used = reply.total_tokens or estimated_tokens
            logger.info(
                "llm_call_succeeded",
                attempt=attempt,
                tokens_used=tokens_used,
                estimated_tokens=estimated_tokens,
                files=len(files_referenced),
            )
            return ChatResult(
                text=reply.text,
                tokens_used=tokens_used,
                files_referenced=files_referenced,
                estimated_tokens=estimated_tokens,
                input_tokens=reply.input_tokens or estimated_tokens,
                output_tokens=reply.output_tokens or estimate_token_count(reply.text),
                attempts=attempt,
                model=getattr(provider, "model_name", self.model_name),
            )

        logger.error("llm_call_failed", attempts=self.max_attempts, error=str(last_error))
        raise LLMCallFailedError(self.max_attempts, last_error)
