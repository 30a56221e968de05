"""
External collaborator adapters: generation, embeddings, retries, audit and rate limiting.
"""

from .admission import (
    AuditEvent,
    AuditSink,
    FixedWindowRateLimiter,
    LoggingAuditSink,
    RateLimitDecision,
    RateLimiter,
)
from .embeddings import EmbeddingClient, OpenAIEmbeddingClient
from .llm import (
    ChatCompletionService,
    GenerationService,
    LLMParserService,
    StructuredAnswerService,
)
from .retry import call_with_retries

__all__ = [
    "AuditEvent",
    "AuditSink",
    "ChatCompletionService",
    "EmbeddingClient",
    "FixedWindowRateLimiter",
    "GenerationService",
    "LLMParserService",
    "LoggingAuditSink",
    "OpenAIEmbeddingClient",
    "RateLimitDecision",
    "RateLimiter",
    "StructuredAnswerService",
    "call_with_retries",
]
