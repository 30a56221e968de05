import logging
from typing import List, Optional, Protocol, Sequence

import openai

from ..errors import EmbeddingError
from .llm import translate_openai_error

logger = logging.getLogger("PediatricRAG")

# Inputs longer than this are truncated before embedding.
MAX_EMBEDDING_CHARS = 8000
DEFAULT_BATCH_SIZE = 32


class EmbeddingClient(Protocol):
    """Turns text into fixed-dimension vectors. Never returns an empty or zero vector."""

    async def embed(self, text: str) -> List[float]: ...

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]: ...

    async def ping(self) -> None: ...


def check_vector(vector: Optional[Sequence[float]], service: str) -> List[float]:
    """Reject vectors that would make cosine similarity meaningless."""
    if not vector:
        raise EmbeddingError(f"{service} returned an empty embedding")
    values = [float(v) for v in vector]
    if not any(values):
        raise EmbeddingError(f"{service} returned a zero embedding")
    return values


class OpenAIEmbeddingClient:
    """Embedding client backed by the OpenAI embeddings endpoint."""

    def __init__(
        self,
        async_client: "openai.AsyncOpenAI",
        model: str = "text-embedding-3-small",
        dimensions: Optional[int] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        name: str = "embedding",
    ):
        self.async_client = async_client
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.name = name

    async def _create(self, inputs: List[str]) -> List[List[float]]:
        params = {"model": self.model, "input": inputs}
        if self.dimensions:
            params["dimensions"] = self.dimensions
        try:
            response = await self.async_client.embeddings.create(**params)
        except openai.OpenAIError as e:
            raise translate_openai_error(e, self.name) from e
        ordered = sorted(response.data, key=lambda d: d.index)
        if len(ordered) != len(inputs):
            raise EmbeddingError(
                f"{self.name} returned {len(ordered)} vectors for {len(inputs)} inputs"
            )
        return [check_vector(d.embedding, self.name) for d in ordered]

    async def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise EmbeddingError("Cannot embed empty text")
        vectors = await self._create([text[:MAX_EMBEDDING_CHARS]])
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed texts in batches of ``batch_size``, preserving input order."""
        cleaned = [t[:MAX_EMBEDDING_CHARS] for t in texts]
        if any(not t.strip() for t in cleaned):
            raise EmbeddingError("Cannot embed empty text")
        vectors: List[List[float]] = []
        for start in range(0, len(cleaned), self.batch_size):
            batch = cleaned[start:start + self.batch_size]
            vectors.extend(await self._create(batch))
            logger.debug(f"Embedded batch {start // self.batch_size + 1} ({len(batch)} texts)")
        return vectors

    async def ping(self) -> None:
        await self.embed("health check")
