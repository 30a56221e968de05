"""
Unit tests for collaborator plumbing: retries, admission control, prompts and
the OpenAI adapters.
"""

import asyncio
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace

import httpx
import openai

from pediatric_rag.errors import (
    CollaboratorAuthError,
    CollaboratorError,
    CollaboratorQuotaError,
    CollaboratorTimeoutError,
    EmbeddingError,
    EnhancementError,
    PrimaryGenerationError,
)
from pediatric_rag.models.answers import DraftAnswer
from pediatric_rag.models.queries import ChatMessage, MedicalContext
from pediatric_rag.processors import ResponseEnhancer, ResponseGenerator
from pediatric_rag.processors.base import PromptManager, PromptRenderError
from pediatric_rag.services.admission import (
    FixedWindowRateLimiter,
    emit_audit,
    hash_client_id,
    make_audit_event,
    sanitize_details,
)
from pediatric_rag.services.embeddings import OpenAIEmbeddingClient, check_vector
from pediatric_rag.services.llm import (
    ChatCompletionService,
    StructuredAnswerService,
    build_messages,
    translate_openai_error,
)
from pediatric_rag.services.retry import call_with_retries

from tests.helpers import FakeGenerationService

OPENAI_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


class Flaky:
    """Coroutine factory that fails a set number of times before succeeding."""

    def __init__(self, failures: int, error: Exception):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestCallWithRetries(unittest.IsolatedAsyncioTestCase):

    async def test_recovers_after_transient_failures(self):
        op = Flaky(2, CollaboratorError("blip", service="svc"))
        result = await call_with_retries(op, service="svc", attempts=3, backoff=0)
        self.assertEqual(result, "ok")
        self.assertEqual(op.calls, 3)

    async def test_raises_last_error_when_exhausted(self):
        op = Flaky(5, CollaboratorError("down", service="svc"))
        with self.assertRaises(CollaboratorError):
            await call_with_retries(op, service="svc", attempts=3, backoff=0)
        self.assertEqual(op.calls, 3)

    async def test_auth_errors_are_not_retried(self):
        op = Flaky(5, CollaboratorAuthError("bad key", service="svc"))
        with self.assertRaises(CollaboratorAuthError):
            await call_with_retries(op, service="svc", attempts=3, backoff=0)
        self.assertEqual(op.calls, 1)

    async def test_timeout_per_attempt(self):
        calls = []

        async def slow():
            calls.append(1)
            await asyncio.sleep(1)

        with self.assertRaises(CollaboratorTimeoutError):
            await call_with_retries(slow, service="svc", attempts=2, timeout=0.01, backoff=0)
        self.assertEqual(len(calls), 2)

    async def test_other_exceptions_propagate(self):
        op = Flaky(1, KeyError("bug"))
        with self.assertRaises(KeyError):
            await call_with_retries(op, service="svc", attempts=3, backoff=0)
        self.assertEqual(op.calls, 1)


class TestRateLimiter(unittest.TestCase):

    def setUp(self):
        self.now = 0.0
        self.limiter = FixedWindowRateLimiter(
            max_requests=2, window_seconds=60, clock=lambda: self.now
        )

    def test_window_allowance(self):
        first = self.limiter.check("client")
        second = self.limiter.check("client")
        third = self.limiter.check("client")
        self.assertEqual((first.allowed, first.remaining), (True, 1))
        self.assertEqual((second.allowed, second.remaining), (True, 0))
        self.assertFalse(third.allowed)
        self.assertEqual(third.reset_in, 60)

    def test_window_resets(self):
        for _ in range(3):
            self.limiter.check("client")
        self.now = 61.0
        self.assertTrue(self.limiter.check("client").allowed)

    def test_clients_are_independent(self):
        self.limiter.check("a")
        self.limiter.check("a")
        self.assertFalse(self.limiter.check("a").allowed)
        self.assertTrue(self.limiter.check("b").allowed)


class TestAudit(unittest.TestCase):

    def test_sensitive_details_are_redacted(self):
        details = sanitize_details({"api_key": "sk-123", "note": "x" * 1500, "count": 3})
        self.assertEqual(details["api_key"], "[REDACTED]")
        self.assertTrue(details["note"].endswith("[TRUNCATED]"))
        self.assertEqual(details["count"], 3)

    def test_event_hashes_client_and_assigns_risk(self):
        event = make_audit_event("rate_limited", client_id="clinic-a", success=False)
        self.assertEqual(event.client_id, hash_client_id("clinic-a"))
        self.assertNotIn("clinic-a", event.client_id)
        self.assertEqual(event.risk_level, "high")
        self.assertEqual(make_audit_event("health_check").risk_level, "low")

    def test_failing_sink_does_not_raise(self):
        class BrokenSink:
            def record(self, event):
                raise IOError("disk full")

        with self.assertLogs("PediatricRAG", level="ERROR"):
            emit_audit(BrokenSink(), make_audit_event("medical_query"))


class TestPrompts(unittest.TestCase):

    def setUp(self):
        self.pm = PromptManager()

    def test_primary_prompt_reflects_context(self):
        context = MedicalContext(
            age_group="infant", urgency_level="critical", clinical_setting="emergency",
            query_type="emergency",
        )
        system, user = self.pm.split(
            "primary_answer",
            query="Infant not breathing: what now?",
            context_blob="## Primary sources\n\n[Source 1] Resuscitation - Airway",
            context=context,
        )
        self.assertIn("urgent (critical)", system)
        self.assertIn("infant age group", system)
        self.assertIn("healthcare professional", system)
        self.assertIn("Infant not breathing: what now?", user)
        self.assertIn("[Source 1] Resuscitation - Airway", user)

    def test_enhance_prompt(self):
        system, user = self.pm.split(
            "enhance_answer",
            query="asthma controller options",
            answer="Use inhaled corticosteroids [Source 1].",
            context_blob="[Source 1] Asthma - Management",
            enhancement_type="simplification",
            target_audience="patients",
            urgency_level="medium",
        )
        self.assertIn("plain language", system)
        self.assertIn("Audience: patients.", system)
        self.assertNotIn("urgent", system)
        self.assertIn("Use inhaled corticosteroids [Source 1].", user)

    def test_free_text_is_inserted_verbatim(self):
        query = "Dose table\x02 from PDF: key: value\n- item\n  'quoted' \"text\" {{ raw }}"
        blob = "[Source 1] Asthma - Management\n\x00\tmg/kg: 0.5\n---\n# heading"
        system, user = self.pm.split(
            "primary_answer",
            query=query,
            context_blob=blob,
            context=MedicalContext(),
        )
        self.assertIn(query, user)
        self.assertIn(blob, user)
        self.assertNotIn("@@verbatim", user)
        self.assertNotIn("Dose table", system)

    def test_placeholder_text_in_values_is_not_expanded(self):
        _, user = self.pm.split(
            "enhance_answer",
            query="@@verbatim-1@@",
            answer="draft",
            context_blob="excerpts",
            enhancement_type="summarization",
            target_audience="clinicians",
            urgency_level="low",
        )
        self.assertIn("Question: @@verbatim-1@@", user)

    def test_missing_template_raises(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(PromptRenderError):
                PromptManager(tmp).split("primary_answer", query="q")

    def test_template_must_render_messages(self):
        with tempfile.TemporaryDirectory() as tmp:
            Path(tmp, "broken.yaml.j2").write_text("just: a mapping\n")
            Path(tmp, "invalid.yaml.j2").write_text("- role: user\n  content: [unclosed\n")
            pm = PromptManager(tmp)
            with self.assertRaises(PromptRenderError):
                pm.messages("broken")
            with self.assertRaises(PromptRenderError):
                pm.messages("invalid")


class TestGenerationPromptFailures(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.empty_prompts = PromptManager(self._tmp.name)

    async def test_generator_wraps_render_failure(self):
        service = FakeGenerationService(name="primary_generation")
        generator = ResponseGenerator(service, prompt_manager=self.empty_prompts, backoff=0.0)
        with self.assertRaises(PrimaryGenerationError):
            await generator.generate("asthma", "excerpts", MedicalContext())
        self.assertEqual(service.calls, [])

    async def test_enhancer_wraps_render_failure(self):
        service = FakeGenerationService(name="secondary_generation")
        enhancer = ResponseEnhancer(service, prompt_manager=self.empty_prompts, backoff=0.0)
        with self.assertRaises(EnhancementError):
            await enhancer.enhance("asthma", "draft", "excerpts", MedicalContext())
        self.assertEqual(service.calls, [])


class TestOpenAIAdapters(unittest.IsolatedAsyncioTestCase):

    def test_build_messages_keeps_recent_history(self):
        history = [
            ChatMessage(role="user" if i % 2 == 0 else "assistant", content=f"turn {i}")
            for i in range(10)
        ]
        messages = build_messages("system", "question", history)
        self.assertEqual(len(messages), 8)
        self.assertEqual(messages[0]["role"], "system")
        self.assertEqual(messages[1]["content"], "turn 4")
        self.assertEqual(messages[-1], {"role": "user", "content": "question"})

    def test_error_translation(self):
        timeout = translate_openai_error(openai.APITimeoutError(request=OPENAI_REQUEST), "svc")
        self.assertIsInstance(timeout, CollaboratorTimeoutError)

        auth = translate_openai_error(
            openai.AuthenticationError(
                "bad key", response=httpx.Response(401, request=OPENAI_REQUEST), body=None
            ),
            "svc",
        )
        self.assertIsInstance(auth, CollaboratorAuthError)
        self.assertFalse(auth.retryable)

        quota = translate_openai_error(
            openai.RateLimitError(
                "quota",
                response=httpx.Response(429, request=OPENAI_REQUEST),
                body={"code": "insufficient_quota"},
            ),
            "svc",
        )
        self.assertIsInstance(quota, CollaboratorQuotaError)

        throttled = translate_openai_error(
            openai.RateLimitError(
                "slow down", response=httpx.Response(429, request=OPENAI_REQUEST), body=None
            ),
            "svc",
        )
        self.assertTrue(throttled.retryable)

    async def test_structured_answer_service(self):
        captured = {}

        async def parse(**params):
            captured.update(params)
            message = SimpleNamespace(
                parsed=DraftAnswer(answer="Answer [Source 1].", confidence=0.7), refusal=None
            )
            usage = SimpleNamespace(prompt_tokens=5, completion_tokens=7, total_tokens=12)
            return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=usage)

        client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(parse=parse)))
        service = StructuredAnswerService(client, model="gpt-4o-mini")

        result = await service.generate("system", "context")

        self.assertEqual(result.text, "Answer [Source 1].")
        self.assertEqual(result.confidence, 0.7)
        self.assertEqual(result.usage["total_tokens"], 12)
        self.assertIs(captured["response_format"], DraftAnswer)
        self.assertEqual(captured["temperature"], 0.3)

    async def test_structured_answer_refusal(self):
        async def parse(**params):
            message = SimpleNamespace(parsed=None, refusal="cannot help")
            return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=None)

        client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(parse=parse)))
        with self.assertRaises(CollaboratorError) as ctx:
            await StructuredAnswerService(client).generate("system", "context")
        self.assertIn("cannot help", str(ctx.exception))

    async def test_chat_completion_service_rejects_empty_output(self):
        async def create(**params):
            message = SimpleNamespace(content="   ")
            return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=None)

        client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
        with self.assertRaises(CollaboratorError):
            await ChatCompletionService(client).generate("system", "context")


class TestEmbeddings(unittest.IsolatedAsyncioTestCase):

    def test_unusable_vectors_are_rejected(self):
        with self.assertRaises(EmbeddingError):
            check_vector([], "svc")
        with self.assertRaises(EmbeddingError):
            check_vector([0.0, 0.0], "svc")
        self.assertEqual(check_vector([0, 1], "svc"), [0.0, 1.0])

    async def test_batches_preserve_order(self):
        requests = []

        async def create(**params):
            requests.append(params["input"])
            data = [
                SimpleNamespace(index=i, embedding=[float(len(text)), 1.0])
                for i, text in reversed(list(enumerate(params["input"])))
            ]
            return SimpleNamespace(data=data)

        client = SimpleNamespace(embeddings=SimpleNamespace(create=create))
        embedder = OpenAIEmbeddingClient(client, batch_size=2)

        vectors = await embedder.embed_batch(["a", "bb", "ccc"])

        self.assertEqual([v[0] for v in vectors], [1.0, 2.0, 3.0])
        self.assertEqual(requests, [["a", "bb"], ["ccc"]])

    async def test_empty_text_is_rejected(self):
        client = SimpleNamespace(embeddings=SimpleNamespace(create=None))
        with self.assertRaises(EmbeddingError):
            await OpenAIEmbeddingClient(client).embed("   ")


if __name__ == "__main__":
    unittest.main()
