import os
import logging
from pathlib import Path
from typing import Optional

import dotenv
import openai
from pydantic import BaseModel, Field
from weaviate.client import WeaviateAsyncClient
from weaviate.connect import ConnectionParams

from .orch.steps import WorkflowComponents
from .pipeline.medical_rag import MedicalRAG
from .processors import (
    ClinicalValidator,
    ContextBuilder,
    InputValidator,
    PromptManager,
    QueryAnalyzer,
    ResponseEnhancer,
    ResponseGenerator,
    RetrievalSettings,
    VectorRetriever,
)
from .services.admission import FixedWindowRateLimiter, LoggingAuditSink
from .services.embeddings import OpenAIEmbeddingClient
from .services.llm import ChatCompletionService, StructuredAnswerService
from .storage.cache import (
    DEFAULT_MAX_ENTRIES,
    RESPONSE_CACHE_TTL,
    RETRIEVAL_CACHE_TTL,
    ResultCache,
)
from .storage.vector_store import DEFAULT_COLLECTION, CorpusStore, InMemoryCorpusStore, WeaviateCorpusStore

logger = logging.getLogger("PediatricRAG")

def get_env_var(name: str, default: Optional[str] = None, required: bool = False) -> str:
    """
    Get an environment variable, with optional default and requirement flag.

    Args:
        name: Name of the environment variable
        default: Default value if not found
        required: Whether to raise an error if not found

    Returns:
        The value of the environment variable, or the default

    Raises:
        ValueError: If required is True and the environment variable is not set
    """
    value = os.environ.get(name, default)
    if value is None:
        if required:
            raise ValueError(f"Required environment variable {name} is not set")
        return ""  # Return empty string for None to fix type issues
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = get_env_var(name, "true" if default else "false")
    return raw.strip().lower() in ("1", "true", "yes", "on")


class RAGSettings(BaseModel):
    """All tunables for an engine instance."""
    openai_api_key: str = ""
    primary_model: str = "gpt-4o-mini"
    secondary_model: Optional[str] = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: Optional[int] = None

    weaviate_host: str = "127.0.0.1"
    weaviate_port: int = 8080
    weaviate_grpc_port: int = 50051
    weaviate_secure: bool = False
    collection_name: str = DEFAULT_COLLECTION
    corpus_json: Optional[Path] = Field(
        None, description="Load the corpus from a JSON export instead of Weaviate."
    )

    primary_timeout: float = 30.0
    secondary_timeout: float = 20.0
    attempts: int = 3
    backoff: float = 1.0
    temperature: float = 0.3

    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    retrieval_cache_ttl: float = RETRIEVAL_CACHE_TTL
    response_cache_ttl: float = RESPONSE_CACHE_TTL
    cache_enabled: bool = True
    cache_max_entries: int = Field(DEFAULT_MAX_ENTRIES, ge=1)

    max_query_length: int = 5000
    min_answer_length: int = 200
    max_validation_warnings: int = 3
    keywords_path: Optional[Path] = None

    rate_limit_max: int = 100
    rate_limit_window: float = 15 * 60
    rate_limit_enabled: bool = True
    audit_enabled: bool = True

    @classmethod
    def from_env(cls) -> "RAGSettings":
        """Read settings from the environment (and a .env file, if present)."""
        dotenv.load_dotenv()
        corpus_json = get_env_var("RAG_CORPUS_JSON")
        keywords = get_env_var("RAG_KEYWORDS_PATH")
        dimensions = get_env_var("EMBEDDING_DIMENSIONS")
        return cls(
            openai_api_key=get_env_var("OPENAI_APIKEY", get_env_var("OPENAI_API_KEY")),
            primary_model=get_env_var("RAG_PRIMARY_MODEL", "gpt-4o-mini"),
            secondary_model=get_env_var("RAG_SECONDARY_MODEL", "gpt-4o-mini") or None,
            embedding_model=get_env_var("EMBEDDING_MODEL", "text-embedding-3-small"),
            embedding_dimensions=int(dimensions) if dimensions else None,
            weaviate_host=get_env_var("WEAVIATE_HOST", "127.0.0.1"),
            weaviate_port=int(get_env_var("WEAVIATE_PORT", "8080")),
            weaviate_grpc_port=int(get_env_var("WEAVIATE_GRPC_PORT", "50051")),
            weaviate_secure=_env_bool("WEAVIATE_SECURE", False),
            collection_name=get_env_var("WEAVIATE_COLLECTION", DEFAULT_COLLECTION),
            corpus_json=Path(corpus_json) if corpus_json else None,
            retrieval=RetrievalSettings(
                similarity_threshold=float(get_env_var("RAG_SIMILARITY_THRESHOLD", "0.7")),
                limit=int(get_env_var("RAG_RESULT_LIMIT", "8")),
                rerank=_env_bool("RAG_RERANK", True),
            ),
            cache_enabled=_env_bool("RAG_CACHE_ENABLED", True),
            cache_max_entries=int(
                get_env_var("RAG_CACHE_MAX_ENTRIES", str(DEFAULT_MAX_ENTRIES))
            ),
            keywords_path=Path(keywords) if keywords else None,
            rate_limit_enabled=_env_bool("RAG_RATE_LIMIT_ENABLED", True),
        )


def build_medical_rag(
    settings: RAGSettings,
    async_client: openai.AsyncOpenAI,
    corpus_store: CorpusStore,
    weaviate_client: Optional[WeaviateAsyncClient] = None,
) -> MedicalRAG:
    """Wire every component from settings and already-created clients."""
    prompt_manager = PromptManager()
    retrieval_cache = (
        ResultCache(
            settings.retrieval_cache_ttl,
            name="retrieval_cache",
            max_entries=settings.cache_max_entries,
        )
        if settings.cache_enabled else None
    )
    retriever = VectorRetriever(
        embedding_client=OpenAIEmbeddingClient(
            async_client,
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
        ),
        corpus_store=corpus_store,
        settings=settings.retrieval,
        cache=retrieval_cache,
    )
    generator = ResponseGenerator(
        StructuredAnswerService(
            async_client,
            model=settings.primary_model,
            temperature=settings.temperature,
            timeout=settings.primary_timeout,
        ),
        prompt_manager=prompt_manager,
        attempts=settings.attempts,
        backoff=settings.backoff,
    )
    enhancer = None
    if settings.secondary_model:
        enhancer = ResponseEnhancer(
            ChatCompletionService(
                async_client,
                model=settings.secondary_model,
                temperature=settings.temperature,
                timeout=settings.secondary_timeout,
            ),
            prompt_manager=prompt_manager,
            # The enhancement pass is optional, so it gets a single attempt.
            attempts=1,
        )

    components = WorkflowComponents(
        retriever=retriever,
        generator=generator,
        enhancer=enhancer,
        input_validator=InputValidator(max_length=settings.max_query_length),
        analyzer=QueryAnalyzer(settings.keywords_path),
        context_builder=ContextBuilder(),
        clinical_validator=ClinicalValidator(
            min_length=settings.min_answer_length,
            max_warnings=settings.max_validation_warnings,
        ),
    )
    return MedicalRAG(
        components,
        response_cache=(
            ResultCache(
                settings.response_cache_ttl,
                name="response_cache",
                max_entries=settings.cache_max_entries,
            )
            if settings.cache_enabled else None
        ),
        audit_sink=LoggingAuditSink() if settings.audit_enabled else None,
        rate_limiter=(
            FixedWindowRateLimiter(settings.rate_limit_max, settings.rate_limit_window)
            if settings.rate_limit_enabled else None
        ),
        weaviate_client=weaviate_client,
    )


async def setup_medical_rag(settings: Optional[RAGSettings] = None) -> MedicalRAG:
    """
    Set up and return a configured MedicalRAG instance.

    Args:
        settings: Engine settings; read from the environment when omitted

    Returns:
        A configured MedicalRAG instance ready to use

    Raises:
        ValueError: If no OpenAI API key is configured
    """
    settings = settings or RAGSettings.from_env()
    if not settings.openai_api_key:
        raise ValueError("Required environment variable OPENAI_APIKEY is not set")

    async_client = openai.AsyncOpenAI(api_key=settings.openai_api_key)

    if settings.corpus_json is not None:
        logger.info(f"Using in-memory corpus from {settings.corpus_json}")
        return build_medical_rag(
            settings, async_client, InMemoryCorpusStore.from_json(settings.corpus_json)
        )

    host = settings.weaviate_host
    logger.info(f"Connecting to Weaviate at {host}:{settings.weaviate_port}")

    # Create and connect to Weaviate client
    client = WeaviateAsyncClient(
        connection_params=ConnectionParams.from_params(
            http_host=host,
            http_port=settings.weaviate_port,
            http_secure=settings.weaviate_secure,
            grpc_host=host,
            grpc_port=settings.weaviate_grpc_port,
            grpc_secure=settings.weaviate_secure,
        ),
        additional_headers={"X-OpenAI-Api-Key": settings.openai_api_key},
    )

    try:
        await client.connect()
        logger.info("Connected to Weaviate successfully")
    except Exception as e:
        logger.error(f"Failed to connect to Weaviate: {e}")
        raise

    return build_medical_rag(
        settings,
        async_client,
        WeaviateCorpusStore(client, settings.collection_name),
        weaviate_client=client,
    )
