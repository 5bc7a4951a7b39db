import asyncio
import json

import httpx
import pytest

import recon.api as api
from recon.api import get_headers, has_openrouter_api_key
from recon.classifier import (
    CLASSIFIER_RESPONSE_FORMAT,
    OpenRouterColumnClassifier,
    RoleSuggestion,
    parse_suggestions,
)

ROLES = ["entity_id", "total_amount", "component:optical", "unmapped"]


class FakeClient:
    """Stands in for an entered OpenRouterClient."""

    def __init__(self, content):
        self.content = content
        self.requests: list[dict] = []

    async def chat(self, model, messages, response_format=None):
        self.requests.append(
            {"model": model, "messages": messages, "response_format": response_format}
        )
        return {"message": {"content": self.content}, "usage": {}}


class TestParseSuggestions:
    def test_ranked_and_filtered(self):
        text = json.dumps(
            {
                "suggestions": [
                    {"role": "total_amount", "confidence": 0.3},
                    {"role": "salary", "confidence": 0.99},
                    {"role": "entity_id", "confidence": 1.7, "rationale": "ids"},
                    {"role": "unmapped", "confidence": "high"},
                    "junk",
                ]
            }
        )
        assert parse_suggestions(text, ROLES) == [
            RoleSuggestion("entity_id", 1.0, "ids"),
            RoleSuggestion("total_amount", 0.3),
        ]

    def test_invalid_json(self):
        with pytest.raises(RuntimeError, match="invalid JSON"):
            parse_suggestions("not json", ROLES)

    def test_missing_list(self):
        with pytest.raises(RuntimeError, match="suggestions"):
            parse_suggestions(json.dumps({"role": "entity_id"}), ROLES)


class TestOpenRouterColumnClassifier:
    def test_prompt_lists_samples_and_roles(self):
        classifier = OpenRouterColumnClassifier(FakeClient(""), max_samples=2)
        prompt = classifier.build_prompt("Emp #", ["1", None, "2", "3"], ROLES)
        assert '"Emp #"' in prompt
        assert '["1", "2"]' in prompt
        assert "- component:optical" in prompt

    def test_classify(self):
        reply = json.dumps({"suggestions": [{"role": "entity_id", "confidence": 0.9}]})
        client = FakeClient(reply)
        classifier = OpenRouterColumnClassifier(client, model="test/model")
        suggestions = asyncio.run(classifier.classify("Emp", ["1"], ROLES))
        assert suggestions == [RoleSuggestion("entity_id", 0.9)]
        request = client.requests[0]
        assert request["model"] == "test/model"
        assert request["response_format"] == CLASSIFIER_RESPONSE_FORMAT

    def test_list_content(self):
        reply = json.dumps({"suggestions": [{"role": "unmapped", "confidence": 0.8}]})
        client = FakeClient([{"type": "text", "text": reply}])
        suggestions = asyncio.run(OpenRouterColumnClassifier(client).classify("X", [], ROLES))
        assert suggestions[0].role == "unmapped"

    def test_empty_reply_raises(self):
        classifier = OpenRouterColumnClassifier(FakeClient(None))
        with pytest.raises(RuntimeError, match="empty"):
            asyncio.run(classifier.classify("X", [], ROLES))


class TestApiKey:
    def test_headers_require_key(self, monkeypatch):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        assert not has_openrouter_api_key()
        with pytest.raises(ValueError):
            get_headers()

    def test_headers(self, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-test")
        assert has_openrouter_api_key()
        assert get_headers()["Authorization"] == "Bearer sk-test"


class TestOpenRouterClient:
    """Retry behavior against a mocked transport."""

    def _run(self, monkeypatch, handler, max_retries=2):
        async def no_sleep(_):
            return None

        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-test")
        monkeypatch.setattr(api.asyncio, "sleep", no_sleep)

        async def go():
            async with api.OpenRouterClient(max_retries=max_retries) as client:
                await client._client.aclose()
                client._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
                return await client.chat("m", [{"role": "user", "content": "hi"}])

        return asyncio.run(go())

    def test_retries_server_errors(self, monkeypatch):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 2:
                return httpx.Response(503, json={"error": {"message": "busy"}})
            return httpx.Response(
                200, json={"choices": [{"message": {"content": "ok"}}], "usage": {"total_tokens": 3}}
            )

        reply = self._run(monkeypatch, handler)
        assert reply["message"]["content"] == "ok"
        assert reply["usage"] == {"total_tokens": 3}
        assert len(calls) == 2
        assert json.loads(calls[0].content)["model"] == "m"

    def test_client_errors_are_final(self, monkeypatch):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, json={"error": {"message": "bad key"}})

        with pytest.raises(RuntimeError, match="bad key"):
            self._run(monkeypatch, handler)
        assert len(calls) == 1

    def test_gives_up_after_retries(self, monkeypatch):
        def handler(request):
            return httpx.Response(500, text="oops")

        with pytest.raises(RuntimeError, match="after 1 retries"):
            self._run(monkeypatch, handler, max_retries=1)
