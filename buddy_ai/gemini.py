from __future__ import annotations

import dataclasses
import json
import logging
import os
import re
import threading
import typing as t

import httpx

from buddy_ai.errors import GenerationError, NotConfiguredError

JsonDict = dict[str, t.Any]
T = t.TypeVar("T")

logger = logging.getLogger(__name__)

GEMINI_MODEL_OPTIONS: tuple[tuple[str, str], ...] = (
    ("googleai/gemini-2.5-flash", "Gemini 2.5 Flash"),
    ("googleai/gemini-1.5-flash", "Gemini 1.5 Flash"),
    ("googleai/gemini-1.5-pro", "Gemini 1.5 Pro"),
)
GEMINI_MODEL_VALUES = tuple(value for value, _ in GEMINI_MODEL_OPTIONS)


def default_model() -> str:
    return os.environ.get("GOOGLE_DEFAULT_MODEL") or GEMINI_MODEL_VALUES[0]


class GeminiClient:
    """Thin async client for the Gemini ``generateContent`` REST endpoint.

    One instance is bound to one model. Calls are made once: there is no
    retry, and any transport, HTTP or decoding problem surfaces as
    ``GenerationError``.
    """

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self.api_key = api_key or os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")
        if not self.api_key:
            raise NotConfiguredError("Gemini", "Missing GEMINI_API_KEY (or GOOGLE_API_KEY).")
        self.model_id = model
        self.model = model.split("/", 1)[1] if model.startswith("googleai/") else model
        self.base_url = (
            base_url or os.environ.get("GEMINI_BASE_URL") or "https://generativelanguage.googleapis.com/v1beta"
        ).rstrip("/")
        self.timeout_s = timeout_s if timeout_s is not None else float(os.environ.get("GEMINI_TIMEOUT_S") or 60.0)

    def _strip_code_fences(self, text: str) -> str:
        s = text.strip()
        start_fence = s.find("```")
        if start_fence != -1:
            match = re.search(r"```[a-zA-Z0-9_-]*\s*", s[start_fence:])
            if match:
                content_start = start_fence + match.end()
                end_fence = s.find("```", content_start)
                if end_fence != -1:
                    return s[content_start:end_fence].strip()
                return s[content_start:].strip()
        return s

    def _extract_json_object(self, text: str) -> str:
        s = self._strip_code_fences(text)
        start = s.find("{")
        end = s.rfind("}")
        if start == -1 or end <= start:
            return s
        return s[start : end + 1]

    def _parse_model_json(self, text: str) -> JsonDict:
        try:
            out = json.loads(self._strip_code_fences(text))
        except json.JSONDecodeError:
            try:
                out = json.loads(self._extract_json_object(text))
            except json.JSONDecodeError as e:
                raise GenerationError(f"Gemini did not return valid JSON: {text[:500]}", model=self.model_id) from e
        if not isinstance(out, dict):
            raise GenerationError(f"Gemini returned {type(out).__name__}, expected an object.", model=self.model_id)
        return t.cast(JsonDict, out)

    async def generate_json(self, request: JsonDict) -> JsonDict:
        url = f"{self.base_url}/models/{self.model}:generateContent"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                resp = await client.post(url, params={"key": self.api_key}, json=request)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as e:
            raise GenerationError(
                f"Gemini HTTPError {e.response.status_code}: {e.response.text[:500]}", model=self.model_id
            ) from e
        except httpx.HTTPError as e:
            raise GenerationError(f"Gemini request failed: {e}", model=self.model_id) from e
        except ValueError as e:
            raise GenerationError("Gemini returned a non-JSON response body.", model=self.model_id) from e

        if not isinstance(data, dict):
            raise GenerationError(f"Gemini returned {type(data).__name__}, expected an object.", model=self.model_id)
        candidates = data.get("candidates") or []
        if not isinstance(candidates, list) or not candidates:
            raise GenerationError("Gemini returned no candidates.", model=self.model_id)
        if not isinstance(candidates[0], dict):
            raise GenerationError("Gemini returned a malformed candidate.", model=self.model_id)

        content = candidates[0].get("content") or {}
        if not isinstance(content, dict):
            raise GenerationError("Gemini returned malformed candidate content.", model=self.model_id)
        parts = content.get("parts") or []
        if not isinstance(parts, list):
            raise GenerationError("Gemini returned malformed content parts.", model=self.model_id)
        text_parts = [p.get("text") for p in parts if isinstance(p, dict) and p.get("text")]
        if not text_parts:
            finish_reason = candidates[0].get("finishReason")
            raise GenerationError(f"Gemini returned no text parts. Finish reason: {finish_reason}", model=self.model_id)

        return self._parse_model_json("\n".join(t.cast(list[str], text_parts)).strip())


@dataclasses.dataclass(frozen=True)
class PromptSpec(t.Generic[T]):
    """Static description of one generative operation.

    ``parse_output`` receives the raw model payload and the input payload and
    returns the domain object, raising ``ValueError`` when the payload does
    not satisfy the operation's contract.
    """

    name: str
    system_instruction: str
    output_contract: JsonDict
    response_schema: JsonDict
    parse_output: t.Callable[[JsonDict, JsonDict], T]
    few_shots: tuple[tuple[JsonDict, JsonDict], ...] = ()
    temperature: float = 0.2
    max_output_tokens: int = 2048


@dataclasses.dataclass(frozen=True)
class CompiledPrompt(t.Generic[T]):
    spec: PromptSpec[T]
    model: str
    client: GeminiClient
    system_instruction: JsonDict
    shot_contents: tuple[JsonDict, ...]
    generation_config: JsonDict

    def build_request(self, payload: JsonDict) -> JsonDict:
        user_prompt = json.dumps(
            {**payload, "output_contract": self.spec.output_contract},
            ensure_ascii=False,
        )
        return {
            "systemInstruction": self.system_instruction,
            "contents": [*self.shot_contents, {"role": "user", "parts": [{"text": user_prompt}]}],
            "generationConfig": self.generation_config,
        }


class PromptRegistry:
    """Process-wide cache of backend clients and compiled prompts.

    Clients are keyed by model identifier and prompts by
    ``(operation name, model identifier)``. Both caches are unbounded; the key
    space is the fixed set of supported models times the fixed set of
    operations. First writes are guarded so concurrent request threads build
    each entry once.
    """

    def __init__(
        self,
        *,
        default_model_id: str | None = None,
        client_factory: t.Callable[[str], GeminiClient] = GeminiClient,
    ) -> None:
        self.default_model_id = default_model_id or default_model()
        self._client_factory = client_factory
        self._clients: dict[str, GeminiClient] = {}
        self._prompts: dict[tuple[str, str], CompiledPrompt[t.Any]] = {}
        self._lock = threading.Lock()

    def client_for(self, model: str | None = None) -> GeminiClient:
        model_id = model or self.default_model_id
        client = self._clients.get(model_id)
        if client is not None:
            return client
        with self._lock:
            client = self._clients.get(model_id)
            if client is None:
                client = self._client_factory(model_id)
                self._clients[model_id] = client
        return client

    def _build(self, spec: PromptSpec[T], model_id: str) -> CompiledPrompt[T]:
        shot_contents: list[JsonDict] = []
        for shot_input, shot_output in spec.few_shots:
            shot_user = json.dumps({**shot_input, "output_contract": spec.output_contract}, ensure_ascii=False)
            shot_contents.append({"role": "user", "parts": [{"text": shot_user}]})
            shot_contents.append({"role": "model", "parts": [{"text": json.dumps(shot_output, ensure_ascii=False)}]})
        return CompiledPrompt(
            spec=spec,
            model=model_id,
            client=self.client_for(model_id),
            system_instruction={"parts": [{"text": spec.system_instruction}]},
            shot_contents=tuple(shot_contents),
            generation_config={
                "temperature": spec.temperature,
                "maxOutputTokens": spec.max_output_tokens,
                "responseMimeType": "application/json",
                "responseSchema": spec.response_schema,
            },
        )

    def compile(self, spec: PromptSpec[T], model: str | None = None) -> CompiledPrompt[T]:
        model_id = model or self.default_model_id
        key = (spec.name, model_id)
        compiled = self._prompts.get(key)
        if compiled is not None:
            return compiled
        with self._lock:
            compiled = self._prompts.get(key)
        if compiled is None:
            # Client construction takes the lock itself, so build outside it.
            built = self._build(spec, model_id)
            with self._lock:
                compiled = self._prompts.setdefault(key, built)
        return t.cast(CompiledPrompt[T], compiled)

    async def invoke(self, compiled: CompiledPrompt[T], payload: JsonDict) -> T:
        try:
            out = await compiled.client.generate_json(compiled.build_request(payload))
        except GenerationError as e:
            e.operation = e.operation or compiled.spec.name
            raise
        try:
            return compiled.spec.parse_output(out, payload)
        except (ValueError, TypeError, KeyError) as e:
            raise GenerationError(
                f"{compiled.spec.name} output failed validation: {e}",
                operation=compiled.spec.name,
                model=compiled.model,
            ) from e

    def cached_prompt_keys(self) -> list[tuple[str, str]]:
        return sorted(self._prompts)
