"""Chat orchestration layer: admission, file lookup, and the LLM call."""
from __future__ import annotations

from .document_manager import FileRegistry
from .errors import RateLimitExceededError
from .llm_gateway import ChatResult, LLMGateway
from .observability import get_logger
from .rate_limiter import RateLimiter

logger = get_logger(__name__)


class QueryProcessor:
    """
    Encapsulates the per-request chat path: admit -> read files -> build context -> call LLM.
    HTTP code stays focused on request parsing while this class owns the wiring.
    """

    def __init__(
        self,
        *,
        registry: FileRegistry,
        limiter: RateLimiter,
        gateway: LLMGateway,
    ):
        self.registry = registry
        self.limiter = limiter
        self.gateway = gateway

    async def process(
        self,
        user_id: str,
        prompt: str,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> ChatResult:
        if not self.limiter.admit(user_id):
            raise RateLimitExceededError(user_id)

        files = self.registry.list(user_id)
        logger.info("chat_request_admitted", user_id=str(user_id), files=len(files))
        return await self.gateway.chat(prompt, files, max_tokens=max_tokens, temperature=temperature)
