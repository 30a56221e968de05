import logging
from typing import Optional, Sequence

from ..errors import CollaboratorError, EnhancementError, PrimaryGenerationError
from ..models.answers import GenerationResult
from ..models.queries import ChatMessage, EnhancementOptions, MedicalContext
from .base import BaseProcessor, PromptRenderError, log_timing

logger = logging.getLogger("PediatricRAG")


class ResponseGenerator(BaseProcessor):
    """Produces the primary answer from the query and the retrieved context."""

    @log_timing
    async def generate(
        self,
        query: str,
        context_blob: str,
        context: MedicalContext,
        history: Optional[Sequence[ChatMessage]] = None,
    ) -> GenerationResult:
        """
        Generate the primary answer.

        Args:
            query: The user's question
            context_blob: Output of the ContextBuilder
            context: The query's medical context
            history: Prior conversation turns, most recent last

        Returns:
            The collaborator's answer, usage and self-reported confidence

        Raises:
            PrimaryGenerationError: If the prompt cannot be rendered or the collaborator
                fails after retries
        """
        if not self.configured:
            raise PrimaryGenerationError("No primary generation service configured")
        try:
            result = await self._call_llm(
                "primary_answer",
                history=history,
                query=query,
                context_blob=context_blob,
                context=context,
            )
        except (CollaboratorError, PromptRenderError) as e:
            raise PrimaryGenerationError(f"Primary generation failed: {e}") from e
        logger.info(
            f"Primary answer generated ({len(result.text)} chars, "
            f"confidence={result.confidence})"
        )
        return result


class ResponseEnhancer(BaseProcessor):
    """Optionally rewrites the primary answer for the requested audience."""

    @log_timing
    async def enhance(
        self,
        query: str,
        answer: str,
        context_blob: str,
        context: MedicalContext,
        options: Optional[EnhancementOptions] = None,
    ) -> GenerationResult:
        """
        Refine an answer.

        Raises:
            EnhancementError: If the collaborator is missing or fails after retries
        """
        if not self.configured:
            raise EnhancementError("No enhancement service configured")
        options = options or EnhancementOptions()
        try:
            return await self._call_llm(
                "enhance_answer",
                query=query,
                answer=answer,
                context_blob=context_blob,
                enhancement_type=options.enhancement_type,
                target_audience=options.target_audience,
                urgency_level=context.urgency_level,
            )
        except (CollaboratorError, PromptRenderError) as e:
            raise EnhancementError(f"Enhancement failed: {e}") from e
