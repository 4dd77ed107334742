"""
Pytest configuration and fixtures for branchgraph tests.

Provides:
- Graph fixtures built from small node/edge lists
- A store backed by a temporary table file and an offline AI client
- An HTTP test client whose server writes to a temporary directory
"""
import pytest
from fastapi.testclient import TestClient

from branchgraph.config import GraphConfig
from branchgraph.core.exceptions import AIServiceError
from branchgraph.server.ai_service import AIClient, EchoClient
from branchgraph.server.store import ConversationGraphStore

from tests.graph_helpers import chain_graph, join_graph


class FlakyClient(AIClient):
    """AI client that fails a fixed number of calls, then echoes."""

    name = "flaky"

    def __init__(self, failures: int = 1):
        self.failures = failures
        self.calls = []

    async def generate_reply(self, system_instruction, history, question):
        self.calls.append((system_instruction, [m["content"] for m in history], question))
        if self.failures > 0:
            self.failures -= 1
            raise AIServiceError("Failed to generate AI response. Please try again.")
        return f"answer to {question}"


@pytest.fixture
def chain():
    return chain_graph()


@pytest.fixture
def join():
    return join_graph()


@pytest.fixture
def config(tmp_path):
    return GraphConfig(data_path=tmp_path / "graph.json", save_interval=1)


@pytest.fixture
def broadcasts():
    return []


@pytest.fixture
def store(config, broadcasts):
    async def record(conversation_id, message):
        broadcasts.append(message)

    graph_store = ConversationGraphStore(config, EchoClient(), record, start_saver=False)
    yield graph_store
    graph_store.shutdown()


@pytest.fixture
def flaky_store(config):
    graph_store = ConversationGraphStore(config, FlakyClient(failures=1), start_saver=False)
    yield graph_store
    graph_store.shutdown()


@pytest.fixture
def client(tmp_path, monkeypatch):
    """HTTP client; the lifespan builds a store over a temporary table file."""
    monkeypatch.setenv("BG_DATA_PATH", str(tmp_path / "graph.json"))
    monkeypatch.setenv("BG_AI_PROVIDER", "echo")
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    from branchgraph.server.app import app

    with TestClient(app) as test_client:
        yield test_client
