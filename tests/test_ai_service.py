"""Tests for the AI clients, without network access."""
import asyncio
import json

import httpx
import pytest

from branchgraph.config import GraphConfig
from branchgraph.core.constants import DEFAULT_CONVERSATION_TITLE
from branchgraph.core.exceptions import AIServiceError
from branchgraph.server.ai_service import (
    EchoClient,
    GeminiClient,
    build_contents,
    create_ai_client,
    shorten_title,
)

HISTORY = [
    {"author": "user", "content": "What is a hash map?"},
    {"author": "ai", "content": "A key-value table."},
]


def reply(text):
    return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})


def gemini(handler):
    return GeminiClient("test-key", base_url="https://ai.test/models", transport=httpx.MockTransport(handler))


class TestHelpers:

    def test_build_contents_maps_roles(self):
        contents = build_contents(HISTORY, "And collisions?")

        assert [c["role"] for c in contents] == ["user", "model", "user"]
        assert contents[-1]["parts"] == [{"text": "And collisions?"}]

    def test_shorten_title(self):
        assert shorten_title('"Hash   Map Basics Explained"') == "Hash Map Basics"
        assert shorten_title("   ") == DEFAULT_CONVERSATION_TITLE


class TestEchoClient:

    def test_echoes_history(self):
        text = asyncio.run(EchoClient().generate_reply("sys", HISTORY, "And collisions?"))

        assert text.splitlines() == [
            "Echoing ancestors:",
            "- user: What is a hash map?",
            "- ai: A key-value table.",
            "---",
            "Q: And collisions?",
        ]


class TestGeminiClient:

    def test_request_shape(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return reply("Open addressing or chaining.")

        client = gemini(handler)
        text = asyncio.run(client.generate_reply("Be brief", HISTORY, "And collisions?"))

        assert text == "Open addressing or chaining."
        assert seen["url"].startswith("https://ai.test/models/gemini-2.5-flash-lite:generateContent")
        assert "key=test-key" in seen["url"]
        assert seen["body"]["systemInstruction"] == {"parts": [{"text": "Be brief"}]}
        assert len(seen["body"]["contents"]) == 3

    def test_retries_once_then_succeeds(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(500, json={"error": {"message": "overloaded"}})
            return reply("ok")

        assert asyncio.run(gemini(handler).generate_reply("s", [], "q")) == "ok"
        assert len(calls) == 2

    def test_two_failures_raise(self):
        calls = []

        def handler(request):
            calls.append(request)
            return reply("   ")

        with pytest.raises(AIServiceError, match="Failed to generate AI response"):
            asyncio.run(gemini(handler).generate_reply("s", [], "q"))
        assert len(calls) == 2

    def test_transport_errors_are_retried(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(AIServiceError):
            asyncio.run(gemini(handler).generate_reply("s", [], "q"))

    def test_title(self):
        client = gemini(lambda request: reply("Hash Map Collisions Explained"))
        assert asyncio.run(client.generate_title("q", "a")) == "Hash Map Collisions"

    def test_title_failure_falls_back(self):
        client = gemini(lambda request: httpx.Response(503, text="unavailable"))
        assert asyncio.run(client.generate_title("q", "a")) == DEFAULT_CONVERSATION_TITLE


class TestCreateClient:

    def test_echo_by_default(self):
        assert isinstance(create_ai_client(GraphConfig()), EchoClient)

    def test_gemini_needs_key(self):
        with pytest.raises(ValueError):
            create_ai_client(GraphConfig(ai_provider="gemini"))

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            create_ai_client(GraphConfig(ai_provider="other"))

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("GEMINI_API_KEY", "k")
        monkeypatch.setenv("BG_DATA_PATH", str(tmp_path / "g.json"))
        monkeypatch.delenv("BG_AI_PROVIDER", raising=False)

        config = GraphConfig.from_env()

        assert config.ai_provider == "gemini"
        assert config.data_path == tmp_path / "g.json"
        assert isinstance(create_ai_client(config), GeminiClient)
