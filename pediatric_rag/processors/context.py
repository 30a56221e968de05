import logging
from typing import List, Tuple

from ..models.queries import MedicalContext
from ..models.retrieval import RetrievalResult, ScoredChunk

logger = logging.getLogger("PediatricRAG")

PRIMARY_THRESHOLD = 0.8
SUPPORTING_THRESHOLD = 0.6
DEFAULT_MAX_CHARS = 12000
CORPUS_NAME = "the Nelson Textbook of Pediatrics"


def no_information_message(query_type: str) -> str:
    return f"No relevant information found for this {query_type} query in {CORPUS_NAME}."


def source_label(scored: ScoredChunk) -> str:
    meta = scored.chunk.metadata
    label = meta.label
    if meta.page is not None:
        label += f" (p. {meta.page})"
    return label


class ContextBuilder:
    """
    Turns a RetrievalResult into a tiered, provenance-annotated text blob.

    Chunks above 0.8 relevance form the primary tier, 0.6-0.8 the supporting
    tier and anything lower the background tier. Source numbers follow the
    overall ranking so they stay stable across tiers.
    """

    def __init__(self, max_chars: int = DEFAULT_MAX_CHARS):
        self.max_chars = max_chars

    @staticmethod
    def tier_for(score: float) -> str:
        if score > PRIMARY_THRESHOLD:
            return "Primary"
        if score >= SUPPORTING_THRESHOLD:
            return "Supporting"
        return "Background"

    @staticmethod
    def _header(index: int, scored: ScoredChunk) -> str:
        meta = scored.chunk.metadata
        parts = [f"[Source {index}] {meta.label}"]
        if meta.title and meta.title not in meta.label:
            parts.append(meta.title)
        parts.append(f"evidence: {meta.evidence_level or 'unrated'}")
        parts.append(f"relevance: {scored.relevance_score:.2f}")
        return " | ".join(parts)

    def build(self, result: RetrievalResult, context: MedicalContext) -> str:
        """
        Build the context blob handed to the generation collaborators.

        Args:
            result: Ranked retrieval output
            context: The query's medical context

        Returns:
            The formatted blob, or an explicit no-information placeholder
        """
        if not result.chunks:
            return no_information_message(context.query_type)

        tiers: dict[str, List[Tuple[int, ScoredChunk]]] = {
            "Primary": [],
            "Supporting": [],
            "Background": [],
        }
        for index, scored in enumerate(result.chunks, start=1):
            tiers[self.tier_for(scored.relevance_score)].append((index, scored))

        sections: List[str] = []
        used = 0
        truncated = 0
        for tier_name, entries in tiers.items():
            blocks: List[str] = []
            for index, scored in entries:
                block = f"{self._header(index, scored)}\n{scored.chunk.content.strip()}"
                if used + len(block) > self.max_chars and (sections or blocks):
                    truncated += 1
                    continue
                used += len(block)
                blocks.append(block)
            if blocks:
                sections.append(f"## {tier_name} sources\n\n" + "\n\n".join(blocks))

        if truncated:
            logger.info(f"Context budget reached; omitted {truncated} lower-ranked chunks")
        return "\n\n".join(sections)

    @staticmethod
    def sources(result: RetrievalResult) -> List[str]:
        """Deduplicated citation strings in ranking order."""
        seen = set()
        labels = []
        for scored in result.chunks:
            label = source_label(scored)
            if label not in seen:
                seen.add(label)
                labels.append(label)
        return labels
