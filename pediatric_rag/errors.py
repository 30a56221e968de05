"""
Exception hierarchy for the pediatric RAG engine.

Fatal errors abort the workflow and surface to the caller of ``MedicalRAG.submit``.
Non-fatal issues (enhancement failures, clinical validation gaps) never raise past
the workflow; they are recorded as warnings on the result instead.
"""

from typing import Any, Dict, List, Optional


class RAGError(Exception):
    """Base class for all errors raised by the engine."""

    fatal: bool = True

    def __init__(
        self,
        message: str,
        step_id: Optional[str] = None,
        diagnostics: Optional[List[Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.step_id = step_id
        self.diagnostics: List[Any] = list(diagnostics or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "step_id": self.step_id,
        }


class ValidationError(RAGError):
    """The query was rejected before any processing (oversize, empty, PHI)."""


class RateLimitExceededError(RAGError):
    """The caller exhausted its request allowance for the current window."""

    def __init__(self, message: str, retry_after: float = 0.0, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class RetrievalError(RAGError):
    """Embedding or corpus lookup failed after retries."""


class EmbeddingError(RetrievalError):
    """The embedding client failed or returned an unusable vector."""


class CorpusError(RetrievalError):
    """The corpus store could not be queried."""


class PrimaryGenerationError(RAGError):
    """The primary generation collaborator failed after retries."""


class EnhancementError(RAGError):
    """The secondary generation collaborator failed. Never fatal."""

    fatal = False


class WorkflowError(RAGError):
    """Programming error in the workflow graph itself."""


class GraphConfigError(WorkflowError):
    """The workflow graph is malformed (duplicate ids, dangling or cyclic edges)."""


class CycleError(WorkflowError):
    """A step id was reached a second time during one execution."""


class CollaboratorError(Exception):
    """Raised by external service adapters; wrapped into RAGError subclasses by the steps."""

    retryable: bool = True

    def __init__(self, message: str, service: str = "unknown"):
        super().__init__(message)
        self.service = service


class CollaboratorTimeoutError(CollaboratorError):
    """The collaborator did not answer within its time budget."""


class CollaboratorAuthError(CollaboratorError):
    """Credentials were rejected. Retrying will not help."""

    retryable = False


class CollaboratorQuotaError(CollaboratorError):
    """The collaborator reported an exhausted quota or billing limit."""

    retryable = False
