"""AI collaborator: answers questions given their ancestor history."""

import logging
import re

import httpx

from ..config import GraphConfig
from ..core.constants import (
    AI_API_BASE_URL,
    AI_MAX_ATTEMPTS,
    AI_MODEL,
    DEFAULT_CONVERSATION_TITLE,
    MAX_TITLE_WORDS,
)
from ..core.exceptions import AIServiceError
from ..core.types import Message

logger = logging.getLogger(__name__)

AI_FAILED_MESSAGE = "Failed to generate AI response. Please try again."


def build_contents(history: list[Message], current: str | None = None) -> list[dict]:
    """Map stored history (and the new question) to generateContent turns."""
    contents = [
        {"role": "user" if m["author"] == "user" else "model", "parts": [{"text": m["content"]}]}
        for m in history
    ]
    if current:
        contents.append({"role": "user", "parts": [{"text": current}]})
    return contents


def shorten_title(text: str) -> str:
    """First few words of a generated title, quotes removed."""
    words = re.sub(r"\s+", " ", text).strip().strip("\"'").split()
    if not words:
        return DEFAULT_CONVERSATION_TITLE
    return " ".join(words[:MAX_TITLE_WORDS])


async def with_retry(call, attempts: int = AI_MAX_ATTEMPTS) -> str:
    """Run an AI call up to `attempts` times; raise AIServiceError after the last failure."""
    for attempt in range(1, attempts + 1):
        try:
            return await call()
        except (AIServiceError, httpx.HTTPError, ValueError) as e:
            logger.error(f"AI call failed (attempt {attempt}/{attempts}): {e}")
    raise AIServiceError(AI_FAILED_MESSAGE)


class AIClient:
    """Interface of the AI collaborator."""

    name = "base"

    async def generate_reply(self, system_instruction: str, history: list[Message], question: str) -> str:
        raise NotImplementedError

    async def generate_title(self, question: str, answer: str) -> str:
        return shorten_title(question)

    async def aclose(self):
        pass


class EchoClient(AIClient):
    """Offline client that echoes the ancestor history back."""

    name = "echo"

    async def generate_reply(self, system_instruction: str, history: list[Message], question: str) -> str:
        lines = []
        if history:
            lines.append("Echoing ancestors:")
            for m in history:
                lines.append(f"- {m['author']}: {m['content']}")
            lines.append("---")
        lines.append(f"Q: {question}")
        return "\n".join(lines)


class GeminiClient(AIClient):
    """Gemini generateContent over httpx."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str = AI_MODEL,
        timeout: float = 30.0,
        base_url: str = AI_API_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def _generate(self, payload: dict) -> str:
        url = f"{self.base_url}/{self.model}:generateContent"
        response = await self._client.post(url, params={"key": self.api_key}, json=payload)

        if not response.is_success:
            try:
                message = response.json().get("error", {}).get("message")
            except ValueError:
                message = None
            raise AIServiceError(message or f"AI request failed with status {response.status_code}")

        data = response.json()
        candidates = data.get("candidates") or [{}]
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts).strip()
        if not text:
            raise AIServiceError("AI returned an empty response")
        return text

    async def generate_reply(self, system_instruction: str, history: list[Message], question: str) -> str:
        payload = {
            "systemInstruction": {"parts": [{"text": system_instruction}]},
            "contents": build_contents(history, question),
        }
        return await with_retry(lambda: self._generate(payload))

    async def generate_title(self, question: str, answer: str) -> str:
        prompt = (
            f"Generate a short, clear title (1 to {MAX_TITLE_WORDS} words) for this learning conversation. "
            "Return only the title text without quotes.\n\n"
            f"User question:\n{question}\n\n"
            f"AI answer:\n{answer}"
        )
        try:
            text = await self._generate({"contents": [{"role": "user", "parts": [{"text": prompt}]}]})
        except (AIServiceError, httpx.HTTPError, ValueError) as e:
            logger.warning(f"Failed to generate title: {e}")
            return DEFAULT_CONVERSATION_TITLE
        return shorten_title(text)

    async def aclose(self):
        await self._client.aclose()


def create_ai_client(config: GraphConfig) -> AIClient:
    """Build the AI client selected by configuration."""
    if config.ai_provider == "gemini":
        if not config.ai_api_key:
            raise ValueError("GEMINI_API_KEY is required for the gemini provider")
        return GeminiClient(config.ai_api_key, model=config.ai_model, timeout=config.ai_timeout)
    if config.ai_provider == "echo":
        return EchoClient()
    raise ValueError(f"Unknown AI provider '{config.ai_provider}'")
