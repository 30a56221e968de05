import functools
import inspect
import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined, Template, TemplateError

from ..models.answers import GenerationResult
from ..models.queries import ChatMessage
from ..services.llm import GenerationService
from ..services.retry import call_with_retries

logger = logging.getLogger("PediatricRAG")

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"
TEMPLATE_SUFFIX = ".yaml.j2"


def log_timing(func):
    """Log how long a (sync or async) pipeline stage took, including failed runs."""
    label = func.__qualname__

    def report(start: float, outcome: str) -> None:
        logger.info(f"{label} {outcome} in {(time.perf_counter() - start) * 1000:.0f}ms")

    if inspect.iscoroutinefunction(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception:
                report(start, "failed")
                raise
            report(start, "completed")
            return result
        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception:
            report(start, "failed")
            raise
        report(start, "completed")
        return result
    return wrapper


class PromptRenderError(ValueError):
    """A prompt template failed to render into chat messages."""


class _Verbatim:
    """
    Collects free-text values during a render and stands a placeholder in for each.

    YAML rejects control characters and reinterprets indentation, so text such
    as the query, corpus excerpts or a draft answer is only substituted after
    the template's YAML has been parsed.
    """

    PATTERN = re.compile(r"@@verbatim-(\d+)@@")

    def __init__(self):
        self.values: List[str] = []

    def __call__(self, value: Any) -> str:
        self.values.append(str(value))
        return f"@@verbatim-{len(self.values) - 1}@@"

    def restore(self, content: str) -> str:
        return self.PATTERN.sub(lambda m: self.values[int(m.group(1))], content)


class PromptManager:
    """
    Renders ``<name>.yaml.j2`` prompt templates into chat messages.

    A template renders to a YAML list of ``{role, content}`` mappings. Free text
    is wrapped as ``{{ verbatim(value) }}`` and inserted after parsing.
    """

    def __init__(self, templates_dir: str | Path = PROMPTS_DIR):
        # Templates render to YAML, not HTML, so nothing is escaped.
        self.env = Environment(
            loader=FileSystemLoader(templates_dir),
            autoescape=False,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )
        self._templates: Dict[str, Template] = {}

    def _get_template(self, name: str) -> Template:
        template = self._templates.get(name)
        if template is None:
            template = self._templates[name] = self.env.get_template(name + TEMPLATE_SUFFIX)
        return template

    def messages(self, name: str, **context) -> List[Dict[str, str]]:
        """
        Render a prompt template.

        Raises:
            PromptRenderError: If the template is missing, fails to render, or
                does not produce a list of role/content messages
        """
        verbatim = _Verbatim()
        try:
            raw = self._get_template(name).render(verbatim=verbatim, **context)
            rendered = yaml.safe_load(raw)
        except (TemplateError, yaml.YAMLError) as e:
            raise PromptRenderError(f"Prompt template '{name}' failed to render: {e}") from e
        if not isinstance(rendered, list) or not all(
            isinstance(m, dict) and {"role", "content"} <= m.keys() for m in rendered
        ):
            raise PromptRenderError(f"Prompt template '{name}' did not render to chat messages")
        return [
            {"role": str(m["role"]), "content": verbatim.restore(str(m["content"]))}
            for m in rendered
        ]

    def split(self, name: str, **context) -> tuple[str, str]:
        """Render a template and return its (system, user) message contents."""
        system_parts: List[str] = []
        user_parts: List[str] = []
        for message in self.messages(name, **context):
            target = system_parts if message["role"] == "system" else user_parts
            target.append(message["content"].strip())
        return "\n\n".join(system_parts), "\n\n".join(user_parts)


class BaseProcessor:
    """Base class for processors that delegate text generation to a collaborator."""

    def __init__(
        self,
        service: Optional[GenerationService],
        prompt_manager: Optional[PromptManager] = None,
        attempts: int = 3,
        backoff: float = 1.0,
    ):
        self.service = service
        self.pm = prompt_manager or PromptManager()
        self.attempts = attempts
        self.backoff = backoff

    @property
    def configured(self) -> bool:
        return self.service is not None

    async def _call_llm(
        self,
        prompt_name: str,
        history: Optional[Sequence[ChatMessage]] = None,
        **prompt_args: Any,
    ) -> GenerationResult:
        """
        Render a prompt template and send it to the collaborator with retries.

        Raises:
            CollaboratorError: When every attempt fails or the failure is not retryable
        """
        if self.service is None:
            raise RuntimeError(f"{type(self).__name__} has no generation service configured")
        service = self.service
        system_prompt, context = self.pm.split(prompt_name, **prompt_args)
        return await call_with_retries(
            lambda: service.generate(system_prompt, context, history),
            service=service.name,
            attempts=self.attempts,
            timeout=service.timeout,
            backoff=self.backoff,
        )
