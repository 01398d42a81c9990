import json
import os
import unittest
from unittest.mock import patch

import httpx

from buddy_ai import prompts
from buddy_ai.buddy_ai import INCORRECT_FEEDBACK, BuddyAIUtil
from buddy_ai.errors import GenerationError, NotConfiguredError
from buddy_ai.gemini import GeminiClient, PromptRegistry
from tests.fakes import FRACTIONS_PROBLEM, FakeClientFactory

MODEL = "googleai/gemini-2.5-flash"
PRO = "googleai/gemini-1.5-pro"


class TestPromptRegistry(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.factory = FakeClientFactory({"problem": FRACTIONS_PROBLEM})
        self.registry = PromptRegistry(default_model_id=MODEL, client_factory=self.factory)

    def test_compile_reuses_compiled_prompt_per_model(self):
        first = self.registry.compile(prompts.GENERATE_PROBLEM)
        second = self.registry.compile(prompts.GENERATE_PROBLEM, MODEL)
        self.assertIs(first, second)
        self.assertEqual(self.factory.created, 1)

    def test_each_model_gets_its_own_client_and_prompt(self):
        flash = self.registry.compile(prompts.GENERATE_PROBLEM, MODEL)
        pro = self.registry.compile(prompts.GENERATE_PROBLEM, PRO)
        self.assertIsNot(flash, pro)
        self.assertIsNot(flash.client, pro.client)
        self.assertEqual(self.factory.created, 2)

    def test_operations_share_a_client(self):
        self.registry.compile(prompts.PROVIDE_HINT)
        self.registry.compile(prompts.PROVIDE_FEEDBACK)
        self.assertEqual(self.factory.created, 1)
        self.assertEqual(
            self.registry.cached_prompt_keys(),
            [("provideHint", MODEL), ("providePersonalizedFeedback", MODEL)],
        )

    def test_compiled_request_carries_schema_and_few_shots(self):
        compiled = self.registry.compile(prompts.GENERATE_PROBLEM)
        req = compiled.build_request({"topic": "Fractions"})
        self.assertEqual(req["generationConfig"]["responseMimeType"], "application/json")
        self.assertIn("responseSchema", req["generationConfig"])
        self.assertEqual(len(req["contents"]), 3)
        self.assertEqual([c["role"] for c in req["contents"]], ["user", "model", "user"])
        user = json.loads(req["contents"][-1]["parts"][0]["text"])
        self.assertEqual(user["topic"], "Fractions")
        self.assertIn("output_contract", user)

    async def test_invoke_returns_validated_domain_object(self):
        compiled = self.registry.compile(prompts.GENERATE_PROBLEM)
        problem = await self.registry.invoke(compiled, {"questionType": "subjective"})
        self.assertEqual(problem.answer, "0.5")
        self.assertEqual([w.step for w in problem.working], [1, 2])

    async def test_invalid_output_is_a_generation_error(self):
        self.factory.routes["problem"] = {**FRACTIONS_PROBLEM, "answer": "half a pizza"}
        compiled = self.registry.compile(prompts.GENERATE_PROBLEM)
        with self.assertRaises(GenerationError) as ctx:
            await self.registry.invoke(compiled, {"questionType": "subjective"})
        self.assertEqual(ctx.exception.operation, "generateMathProblem")
        self.assertEqual(ctx.exception.model, MODEL)

    async def test_backend_failure_is_tagged_with_operation(self):
        self.factory.routes["hint"] = GenerationError("Gemini returned no candidates.", model=MODEL)
        compiled = self.registry.compile(prompts.PROVIDE_HINT)
        with self.assertRaises(GenerationError) as ctx:
            await self.registry.invoke(compiled, {"problem": "p", "working": []})
        self.assertEqual(ctx.exception.operation, "provideHint")


class TestGeminiClient(unittest.IsolatedAsyncioTestCase):
    def _client(self):
        return GeminiClient(MODEL, api_key="test-key", base_url="https://gemini.test/v1beta", timeout_s=5)

    def _patch_transport(self, handler):
        real_client = httpx.AsyncClient

        def make_client(**kwargs):
            return real_client(transport=httpx.MockTransport(handler), **kwargs)

        return patch("buddy_ai.gemini.httpx.AsyncClient", side_effect=make_client)

    def test_missing_key_is_not_configured(self):
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(NotConfiguredError) as ctx:
                GeminiClient(MODEL)
        self.assertEqual(ctx.exception.message, "Gemini is not configured.")

    def test_model_prefix_is_stripped(self):
        client = self._client()
        self.assertEqual(client.model, "gemini-2.5-flash")
        self.assertEqual(client.model_id, MODEL)

    def test_parse_model_json_handles_code_fences(self):
        client = self._client()
        self.assertEqual(client._parse_model_json('```json\n{"hint": "x"}\n```'), {"hint": "x"})
        self.assertEqual(client._parse_model_json('Sure! {"hint": "y"} hope that helps'), {"hint": "y"})
        with self.assertRaises(GenerationError):
            client._parse_model_json("[1, 2]")
        with self.assertRaises(GenerationError):
            client._parse_model_json("no json here")

    async def test_generate_json_posts_to_model_endpoint(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"candidates": [{"content": {"parts": [{"text": '{"hint": "Think about halves."}'}]}}]},
            )

        with self._patch_transport(handler):
            out = await self._client().generate_json({"contents": []})

        self.assertEqual(out, {"hint": "Think about halves."})
        self.assertTrue(seen["url"].startswith("https://gemini.test/v1beta/models/gemini-2.5-flash:generateContent"))
        self.assertIn("key=test-key", seen["url"])
        self.assertEqual(seen["body"], {"contents": []})

    async def test_http_error_is_generation_error(self):
        with self._patch_transport(lambda request: httpx.Response(503, text="overloaded")):
            with self.assertRaises(GenerationError) as ctx:
                await self._client().generate_json({"contents": []})
        self.assertIn("503", str(ctx.exception))

    async def test_no_candidates_is_generation_error(self):
        with self._patch_transport(lambda request: httpx.Response(200, json={"candidates": []})):
            with self.assertRaises(GenerationError):
                await self._client().generate_json({"contents": []})

    async def test_malformed_response_bodies_are_generation_errors(self):
        for body in ([], {"candidates": ["oops"]}, {"candidates": [{"content": "text"}]}):
            with self.subTest(body=body):
                with self._patch_transport(lambda request, body=body: httpx.Response(200, json=body)):
                    with self.assertRaises(GenerationError):
                        await self._client().generate_json({"contents": []})

    async def test_malformed_response_falls_back_to_canned_feedback(self):
        registry = PromptRegistry(
            default_model_id=MODEL,
            client_factory=lambda model: GeminiClient(model, api_key="test-key", base_url="https://gemini.test/v1beta"),
        )
        ai = BuddyAIUtil(registry=registry)
        for body in ([], {"candidates": ["oops"]}):
            with self.subTest(body=body):
                with self._patch_transport(lambda request, body=body: httpx.Response(200, json=body)):
                    result = await ai.provide_feedback(
                        problem="p", correct_answer="16", student_answer="8", is_correct=False
                    )
                self.assertEqual(result.feedback, INCORRECT_FEEDBACK)
                self.assertTrue(result.used_fallback)

    async def test_no_text_parts_is_generation_error(self):
        body = {"candidates": [{"content": {"parts": []}, "finishReason": "SAFETY"}]}
        with self._patch_transport(lambda request: httpx.Response(200, json=body)):
            with self.assertRaises(GenerationError) as ctx:
                await self._client().generate_json({"contents": []})
        self.assertIn("SAFETY", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
