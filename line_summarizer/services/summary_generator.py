"""
Summary Generator adapter.

Turns a session transcript into structured summary content by calling the
Gemini generateContent REST endpoint with httpx. generate() never raises for
upstream problems: it returns a SummaryFailure whose kind tells the caller
what went wrong (timeout, upstream_error, malformed_response, not_configured).
No retries happen here; the caller decides.
"""

import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

import httpx
from pydantic import BaseModel, Field, ValidationError

from line_summarizer.config import settings
from line_summarizer.core.logging_config import get_logger
from line_summarizer.models.chat_session import ChatSession
from line_summarizer.models.message import Message, MessageDirection

logger = get_logger(__name__)


class SummaryPayload(BaseModel):
    """Shape the model is asked to return."""
    summary: str
    key_topics: List[str] = Field(default_factory=list)
    sentiment: str = "neutral"
    urgency: str = "low"
    category: str = "general"
    action_items: List[str] = Field(default_factory=list)
    customer_issues: List[str] = Field(default_factory=list)


@dataclass
class SummaryResult:
    content: str
    key_topics: List[str]
    analysis: Dict[str, Any]
    model: str
    tokens_used: int = 0
    processing_time_ms: int = 0


@dataclass
class SummaryFailure:
    kind: str  # timeout, upstream_error, malformed_response, not_configured
    message: str
    processing_time_ms: int = 0
    details: Dict[str, Any] = field(default_factory=dict)


SummaryOutcome = Union[SummaryResult, SummaryFailure]


class SummaryGenerator(Protocol):
    async def generate(self, session: ChatSession, transcript: Sequence[Message]) -> SummaryOutcome:
        ...


def build_transcript(messages: Sequence[Message]) -> str:
    """One line per message, oldest first: [2024-06-11 09:14] Somchai: hello"""
    lines = []
    for message in messages:
        if message.direction == MessageDirection.BOT:
            speaker = "Bot"
        elif message.direction == MessageDirection.SYSTEM:
            speaker = "System"
        else:
            speaker = message.sender_name or message.sender_id or "Customer"
        stamp = message.timestamp.strftime("%Y-%m-%d %H:%M")
        lines.append(f"[{stamp}] {speaker}: {message.content}")
    return "\n".join(lines)


def build_prompt(session: ChatSession, transcript_text: str, message_count: int) -> str:
    return (
        "You are an assistant that summarizes customer conversations from LINE chats.\n"
        f"Conversation: {session.room_name} ({session.room_kind.value}), "
        f"{message_count} messages.\n\n"
        "Transcript:\n"
        f"{transcript_text}\n\n"
        "Respond with a single JSON object and nothing else, using exactly these keys:\n"
        '{"summary": "3-5 sentence summary in the conversation\'s language", '
        '"key_topics": ["..."], '
        '"sentiment": "positive|neutral|negative", '
        '"urgency": "low|medium|high", '
        '"category": "inquiry|complaint|order|support|general", '
        '"action_items": ["..."], '
        '"customer_issues": ["..."]}'
    )


def _try_payload(candidate: str) -> Optional[SummaryPayload]:
    try:
        return SummaryPayload.model_validate(json.loads(candidate))
    except (json.JSONDecodeError, ValidationError, TypeError):
        return None


def parse_summary_response(text: str) -> SummaryPayload:
    """
    Parse model output into a SummaryPayload.

    Strategies, in order:
    1. The whole response as JSON
    2. A ```json fenced block
    3. The outermost {...} span
    4. The raw text as the summary itself
    """
    stripped = text.strip()

    payload = _try_payload(stripped)
    if payload:
        return payload

    block = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", stripped, re.IGNORECASE)
    if block:
        payload = _try_payload(block.group(1))
        if payload:
            return payload

    obj = re.search(r"\{[\s\S]*\}", stripped)
    if obj:
        payload = _try_payload(obj.group(0))
        if payload:
            return payload

    logger.warning("summary_response_not_json", length=len(stripped))
    return SummaryPayload(summary=stripped)


class GeminiSummaryGenerator:
    """
    Gemini REST client.

    transport is injectable so tests can use httpx.MockTransport.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = settings.GEMINI_API_KEY if api_key is None else api_key
        self.model = model or settings.GEMINI_MODEL
        self.api_url = (api_url or settings.GEMINI_API_URL).rstrip("/")
        self.timeout = timeout or settings.SUMMARY_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def endpoint(self) -> str:
        return f"{self.api_url}/models/{self.model}:generateContent"

    async def generate(self, session: ChatSession, transcript: Sequence[Message]) -> SummaryOutcome:
        if not self.api_key:
            return SummaryFailure("not_configured", "GEMINI_API_KEY is not set")
        if not transcript:
            return SummaryFailure("malformed_response", "Transcript is empty")

        prompt = build_prompt(session, build_transcript(transcript), len(transcript))
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": 0.2,
                "responseMimeType": "application/json",
            },
        }

        start = time.perf_counter()

        def elapsed_ms() -> int:
            return int((time.perf_counter() - start) * 1000)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.endpoint,
                    json=body,
                    headers={"x-goog-api-key": self.api_key},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            logger.warning("summary_upstream_timeout", session_id=session.session_id, timeout=self.timeout)
            return SummaryFailure("timeout", f"Summary request timed out after {self.timeout}s: {type(e).__name__}", elapsed_ms())
        except httpx.HTTPStatusError as e:
            logger.warning(
                "summary_upstream_error",
                session_id=session.session_id,
                status_code=e.response.status_code,
            )
            return SummaryFailure(
                "upstream_error",
                f"Gemini returned HTTP {e.response.status_code}",
                elapsed_ms(),
                {"status_code": e.response.status_code},
            )
        except httpx.HTTPError as e:
            logger.warning("summary_upstream_unreachable", session_id=session.session_id, error=str(e))
            return SummaryFailure("upstream_error", f"Gemini request failed: {e}", elapsed_ms())
        except ValueError as e:
            return SummaryFailure("malformed_response", f"Response is not JSON: {e}", elapsed_ms())

        try:
            parts = data["candidates"][0]["content"]["parts"]
            text = "".join(part.get("text", "") for part in parts)
        except (KeyError, IndexError, TypeError, AttributeError):
            logger.warning("summary_response_malformed", session_id=session.session_id)
            return SummaryFailure("malformed_response", "No candidate text in Gemini response", elapsed_ms())

        if not text.strip():
            return SummaryFailure("malformed_response", "Gemini returned empty text", elapsed_ms())

        payload = parse_summary_response(text)
        usage = data.get("usageMetadata") or {}

        return SummaryResult(
            content=payload.summary,
            key_topics=payload.key_topics,
            analysis={
                "sentiment": payload.sentiment,
                "urgency": payload.urgency,
                "category": payload.category,
                "action_items": payload.action_items,
                "customer_issues": payload.customer_issues,
            },
            model=self.model,
            tokens_used=int(usage.get("totalTokenCount", 0)),
            processing_time_ms=elapsed_ms(),
        )


_summary_generator: Optional[SummaryGenerator] = None


def get_summary_generator() -> SummaryGenerator:
    global _summary_generator
    if _summary_generator is None:
        _summary_generator = GeminiSummaryGenerator()
    return _summary_generator
