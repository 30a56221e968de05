"""
Linear step graph for the pediatric RAG workflow.

The graph is validated when it is built: every step has at most one outgoing
edge, every edge points at a known step, the walk from the entry step never
loops, and no step is left unreachable. Execution additionally refuses to visit
a step twice.
"""

import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from ..errors import CycleError, GraphConfigError, RAGError
from ..models.answers import StepDiagnostic
from .state import StepFailed, StepResult, WorkflowState

logger = logging.getLogger("PediatricRAG")

StepHandler = Callable[[WorkflowState], Awaitable[StepResult]]


class WorkflowObserver(Protocol):
    def on_step_started(self, step_id: str, state: WorkflowState) -> None: ...

    def on_step_completed(self, diagnostic: StepDiagnostic, state: WorkflowState) -> None: ...


class WorkflowStep:
    """A named step with a single optional outgoing edge."""

    def __init__(
        self,
        step_id: str,
        handler: StepHandler,
        next_step: Optional[str] = None,
        description: str = "",
    ):
        self.step_id = step_id
        self.handler = handler
        self.next_step = next_step
        self.description = description or step_id.replace("_", " ")

    def __repr__(self) -> str:
        return f"WorkflowStep({self.step_id!r} -> {self.next_step!r})"


class Workflow:
    """Runs steps in graph order over one WorkflowState."""

    def __init__(self, steps: Sequence[WorkflowStep], entry: Optional[str] = None):
        if not steps:
            raise GraphConfigError("Workflow needs at least one step")

        self.steps: Dict[str, WorkflowStep] = {}
        for step in steps:
            if step.step_id in self.steps:
                raise GraphConfigError(f"Duplicate step id '{step.step_id}'")
            self.steps[step.step_id] = step

        self.entry = entry or steps[0].step_id
        if self.entry not in self.steps:
            raise GraphConfigError(f"Entry step '{self.entry}' is not defined")

        self.order = self._validate()

    def _validate(self) -> List[str]:
        for step in self.steps.values():
            if step.next_step is not None and step.next_step not in self.steps:
                raise GraphConfigError(
                    f"Step '{step.step_id}' points at unknown step '{step.next_step}'"
                )

        order: List[str] = []
        current: Optional[str] = self.entry
        while current is not None:
            if current in order:
                raise GraphConfigError(
                    f"Cycle detected: {' -> '.join(order + [current])}"
                )
            order.append(current)
            current = self.steps[current].next_step

        unreachable = set(self.steps) - set(order)
        if unreachable:
            raise GraphConfigError(f"Unreachable steps: {', '.join(sorted(unreachable))}")
        return order

    async def _run_step(self, step: WorkflowStep, state: WorkflowState) -> StepResult:
        try:
            return await step.handler(state)
        except RAGError as e:
            if e.step_id is None:
                e.step_id = step.step_id
            return StepFailed(error=e)

    async def execute(
        self,
        state: WorkflowState,
        observer: Optional[WorkflowObserver] = None,
    ) -> WorkflowState:
        """
        Execute the workflow from the entry step.

        Args:
            state: A fresh state for this request
            observer: Optional progress hooks

        Returns:
            The final state

        Raises:
            RAGError: The first fatal error, with the step diagnostics attached
            CycleError: If a step would be visited twice
        """
        current: Optional[str] = self.entry
        while current is not None:
            if current in state.visited:
                error = CycleError(
                    f"Step '{current}' visited twice", step_id=current,
                    diagnostics=list(state.diagnostics),
                )
                state.error = error
                raise error
            state.visited.append(current)
            step = self.steps[current]

            if observer is not None:
                observer.on_step_started(step.step_id, state)
            logger.debug(f"Running step {step.step_id}")

            start = time.perf_counter()
            try:
                result = await self._run_step(step, state)
            except Exception as e:
                state.diagnostics.append(
                    StepDiagnostic(
                        step_id=step.step_id,
                        duration_ms=(time.perf_counter() - start) * 1000,
                        success=False,
                        error=f"{type(e).__name__}: {e}",
                    )
                )
                logger.error(f"Step {step.step_id} crashed: {e}", exc_info=True)
                raise
            duration_ms = (time.perf_counter() - start) * 1000

            result.apply(state)
            diagnostic = StepDiagnostic(
                step_id=step.step_id,
                duration_ms=duration_ms,
                success=not state.failed,
                skipped=result.skipped,
                error=state.error.message if state.error is not None else None,
            )
            state.diagnostics.append(diagnostic)
            if observer is not None:
                observer.on_step_completed(diagnostic, state)

            if state.error is not None:
                logger.error(
                    f"Workflow aborted at {step.step_id}: {state.error.message}"
                )
                state.error.diagnostics = list(state.diagnostics)
                raise state.error

            logger.info(f"Step {step.step_id} completed in {duration_ms:.0f}ms")
            current = step.next_step

        return state
