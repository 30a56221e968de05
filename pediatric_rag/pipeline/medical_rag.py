import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Sequence

from ..errors import RAGError, RateLimitExceededError
from ..models.answers import HealthReport, ServiceStatus, SubmitResult
from ..models.queries import (
    ChatMessage,
    ContextOverrides,
    EnhancementOptions,
    MedicalQuery,
)
from ..orch.state import WorkflowState
from ..orch.steps import WorkflowComponents, build_workflow
from ..orch.workflow import WorkflowObserver
from ..services.admission import AuditSink, RateLimiter, emit_audit, make_audit_event
from ..services.embeddings import EmbeddingClient
from ..services.llm import GenerationService
from ..storage.cache import ResultCache, make_key
from ..storage.vector_store import CorpusStore

logger = logging.getLogger("PediatricRAG")

HEALTH_TIMEOUT = 10.0


class MedicalRAG:
    """
    Boundary API of the pediatric RAG engine.

    Wraps the workflow with admission control (rate limiting and auditing) and
    a full-response cache. One instance serves many concurrent requests; each
    request gets its own WorkflowState.
    """

    def __init__(
        self,
        components: WorkflowComponents,
        embedding_client: Optional[EmbeddingClient] = None,
        corpus_store: Optional[CorpusStore] = None,
        primary_service: Optional[GenerationService] = None,
        secondary_service: Optional[GenerationService] = None,
        response_cache: Optional[ResultCache[SubmitResult]] = None,
        audit_sink: Optional[AuditSink] = None,
        rate_limiter: Optional[RateLimiter] = None,
        weaviate_client=None,
    ):
        """
        Initialize the engine.

        Args:
            components: The processors the workflow steps run
            embedding_client: Checked by health(); defaults to the retriever's client
            corpus_store: Checked by health(); defaults to the retriever's store
            primary_service: Checked by health(); defaults to the generator's service
            secondary_service: Checked by health(); defaults to the enhancer's service
            response_cache: Full-response cache, or None to disable caching
            audit_sink: Receives audit events before and after processing
            rate_limiter: Consulted before a request is admitted
            weaviate_client: Closed by close() when the engine owns the connection
        """
        self.components = components
        self.workflow = build_workflow(components)
        self.embedding_client = embedding_client or components.retriever.embedding_client
        self.corpus_store = corpus_store or components.retriever.corpus_store
        self.primary_service = primary_service or components.generator.service
        enhancer = components.enhancer
        self.secondary_service = secondary_service or (enhancer.service if enhancer else None)
        self.response_cache = response_cache
        self.audit_sink = audit_sink
        self.rate_limiter = rate_limiter
        self.weaviate_client = weaviate_client

    def _admit(self, client_id: Optional[str]) -> None:
        if self.rate_limiter is None:
            return
        decision = self.rate_limiter.check(client_id)
        if not decision.allowed:
            emit_audit(
                self.audit_sink,
                make_audit_event(
                    "rate_limited",
                    client_id=client_id,
                    success=False,
                    details={"reset_in": round(decision.reset_in, 1)},
                ),
            )
            raise RateLimitExceededError(
                f"Rate limit exceeded; retry in {decision.reset_in:.0f}s",
                retry_after=decision.reset_in,
            )

    @staticmethod
    def _cache_key(query: MedicalQuery) -> str:
        return make_key(
            query.text,
            {
                "overrides": query.overrides.model_dump(),
                "history": [m.model_dump() for m in query.history],
                "enhancement": query.enhancement.model_dump(),
            },
        )

    async def submit(
        self,
        query: str,
        overrides: Optional[ContextOverrides] = None,
        history: Optional[Sequence[ChatMessage]] = None,
        enhancement: Optional[EnhancementOptions] = None,
        client_id: Optional[str] = None,
        observer: Optional[WorkflowObserver] = None,
    ) -> SubmitResult:
        """
        Answer a pediatric medical question.

        Args:
            query: The question text
            overrides: Caller-supplied age, urgency or setting
            history: Prior conversation turns, most recent last
            enhancement: Controls for the optional enhancement pass
            client_id: Identifies the caller for rate limiting and audit
            observer: Optional progress hooks for each workflow step

        Returns:
            The answer with sources, confidence and per-step diagnostics

        Raises:
            RateLimitExceededError: If the caller is over its request allowance
            RAGError: For any fatal workflow error (validation, retrieval, generation)
        """
        start = time.perf_counter()
        self._admit(client_id)

        medical_query = MedicalQuery(
            text=query,
            overrides=overrides or ContextOverrides(),
            history=list(history or []),
            enhancement=enhancement or EnhancementOptions(),
        )
        emit_audit(
            self.audit_sink,
            make_audit_event(
                "medical_query",
                client_id=client_id,
                details={"query_length": len(query or "")},
            ),
        )

        cache_key = None
        if self.response_cache is not None:
            cache_key = self._cache_key(medical_query)
            cached = self.response_cache.get(cache_key)
            if cached is not None:
                elapsed_ms = (time.perf_counter() - start) * 1000
                logger.info(f"Response cache hit ({elapsed_ms:.1f}ms)")
                result = cached.model_copy(
                    deep=True,
                    update={"cache_hit": True, "processing_time_ms": elapsed_ms}
                )
                self._audit_completion(client_id, result)
                return result

        state = WorkflowState(query=medical_query)
        try:
            await self.workflow.execute(state, observer)
        except RAGError as e:
            emit_audit(
                self.audit_sink,
                make_audit_event(
                    "medical_query_failed",
                    client_id=client_id,
                    success=False,
                    details={"error": type(e).__name__, "step": e.step_id},
                ),
            )
            raise

        result = self._build_result(state, (time.perf_counter() - start) * 1000)
        if self.response_cache is not None and cache_key is not None:
            # Callers own the returned object; the cache keeps its own copy.
            self.response_cache.set(cache_key, result.model_copy(deep=True))
        self._audit_completion(client_id, result)
        return result

    def _audit_completion(self, client_id: Optional[str], result: SubmitResult) -> None:
        emit_audit(
            self.audit_sink,
            make_audit_event(
                "medical_query_completed",
                client_id=client_id,
                details={
                    "confidence": round(result.confidence, 3),
                    "sources": len(result.sources),
                    "cache_hit": result.cache_hit,
                    "warnings": len(result.warnings),
                },
            ),
        )

    @staticmethod
    def _build_result(state: WorkflowState, elapsed_ms: float) -> SubmitResult:
        confidence = state.require("confidence")
        retrieval = state.require("retrieval")
        warnings = list(state.warnings)
        if state.validation is not None:
            warnings.extend(w.code for w in state.validation.warnings)
        return SubmitResult(
            answer=state.require("final_answer"),
            sources=state.sources,
            confidence=confidence.score,
            processing_time_ms=elapsed_ms,
            step_diagnostics=list(state.diagnostics),
            warnings=warnings,
            cache_hit=False,
            context=state.context,
            validation=state.validation,
            search_strategy=retrieval.search_strategy,
            usage=state.usage,
        )

    async def _check_service(self, name: str, ping: Optional[Callable[[], Awaitable[None]]]) -> ServiceStatus:
        if ping is None:
            return ServiceStatus(status="not_configured")
        start = time.perf_counter()
        try:
            await asyncio.wait_for(ping(), timeout=HEALTH_TIMEOUT)
        except asyncio.TimeoutError:
            return ServiceStatus(status="error", detail=f"timed out after {HEALTH_TIMEOUT}s")
        except Exception as e:
            logger.warning(f"Health check for {name} failed: {e}")
            return ServiceStatus(status="error", detail=str(e))
        return ServiceStatus(status="ok", latency_ms=(time.perf_counter() - start) * 1000)

    async def health(self) -> HealthReport:
        """Check every collaborator concurrently."""
        def ping_of(service) -> Optional[Callable[[], Awaitable[None]]]:
            return service.ping if service is not None else None

        embedding, corpus, primary, secondary = await asyncio.gather(
            self._check_service("embedding", ping_of(self.embedding_client)),
            self._check_service("corpus", ping_of(self.corpus_store)),
            self._check_service("primary_generation", ping_of(self.primary_service)),
            self._check_service("secondary_generation", ping_of(self.secondary_service)),
        )
        report = HealthReport(
            embedding=embedding,
            corpus=corpus,
            primary_generation=primary,
            secondary_generation=secondary,
        )
        logger.info(f"Health check: {report.status}")
        return report

    def clear_cache(self) -> None:
        """Drop cached responses and retrievals. Only latency is affected."""
        if self.response_cache is not None:
            self.response_cache.clear()
        retrieval_cache = self.components.retriever.cache
        if retrieval_cache is not None:
            retrieval_cache.clear()

    async def close(self) -> None:
        if self.weaviate_client is not None:
            await self.weaviate_client.close()
