"""
Query monitoring for the pediatric RAG workflow.

This module provides a workflow observer for tracking and displaying query processing progress.
"""

import asyncio
import logging
from typing import List, Optional

from ..models.answers import StepDiagnostic, SubmitResult
from .state import WorkflowState
from .steps import STEP_ORDER

logger = logging.getLogger("PediatricRAG")

SPINNER_FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"

STEPS_DISPLAY = {
    "initializing": "Initializing...",
    "input_validation": "Checking your question...",
    "medical_analysis": "Analyzing medical context...",
    "document_retrieval": "Searching the Nelson Textbook of Pediatrics...",
    "primary_generation": "Generating answer...",
    "response_enhancement": "Refining the answer...",
    "clinical_validation": "Validating clinical safety...",
    "quality_finalization": "Scoring confidence...",
    "completed": "Completed!",
}


class QueryMonitor:
    """Observer for tracking workflow steps and displaying live updates."""

    def __init__(self):
        """Initialize a new query monitor."""
        self.current_step: str = "initializing"
        self.status_message: str = STEPS_DISPLAY["initializing"]
        self.steps_completed: List[StepDiagnostic] = []
        self.warnings: List[str] = []
        self.result: Optional[SubmitResult] = None
        self.error: Optional[str] = None
        self.done_event = asyncio.Event()

    def update_status(self, step: str, message: Optional[str] = None) -> None:
        """Update the current status of the query processing."""
        self.current_step = step
        self.status_message = message or STEPS_DISPLAY.get(
            step, f"Processing: {step.replace('_', ' ').title()}..."
        )
        logger.debug(f"QueryMonitor: {self.status_message}")

    def on_step_started(self, step_id: str, state: WorkflowState) -> None:
        self.update_status(step_id)

    def on_step_completed(self, diagnostic: StepDiagnostic, state: WorkflowState) -> None:
        self.steps_completed.append(diagnostic)
        self.warnings = list(state.warnings)

    def on_workflow_completed(self, result: SubmitResult) -> None:
        """Called with the final result, including cache hits that skip the workflow."""
        self.result = result
        self.update_status("completed")
        self.done_event.set()

    def on_workflow_failed(self, message: str) -> None:
        self.error = message
        self.done_event.set()

    def progress_line(self, frame: int = 0) -> str:
        """One status line: completed step count, current message and a spinner frame."""
        done = len(self.steps_completed)
        spinner = SPINNER_FRAMES[frame % len(SPINNER_FRAMES)]
        return f"[{done}/{len(STEP_ORDER)}] {self.status_message} {spinner}"

    async def display_progress(self, interval: float = 0.1) -> None:
        """Redraw the status line until the workflow finishes or fails."""
        frame = 0
        while not self.done_event.is_set():
            print(f"\r\033[K{self.progress_line(frame)}", end="", flush=True)
            frame += 1
            await asyncio.sleep(interval)
        print("\r\033[K", end="", flush=True)
