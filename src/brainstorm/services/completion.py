from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

import requests
from pydantic import BaseModel, Field, ValidationError

from ..errors import CompletionError
from .model_router import ModelRouter

# Optional import: langchain-openai
try:
    from langchain_openai import ChatOpenAI  # type: ignore
except Exception:  # pragma: no cover - optional import
    ChatOpenAI = None  # type: ignore


logger = logging.getLogger(__name__)
LOG = logging.getLogger("brainstorm.llm")

T = TypeVar("T", bound=BaseModel)

_IMAGE_TIMEOUT = (int(os.getenv("BRAINSTORM_LLM_CONNECT_TIMEOUT", "5")), int(os.getenv("BRAINSTORM_LLM_READ_TIMEOUT", "60")))


@dataclass
class CompletionRequest:
    instructions: str
    input: str
    goal: Optional[str] = None
    history: List[Dict[str, str]] = field(default_factory=list)
    anonymous: bool = False
    purpose: str = "persona"


@dataclass(frozen=True)
class CompletionReply:
    reply: str
    provider: Optional[str] = None
    model: Optional[str] = None


class ExtractedConcept(BaseModel):
    label: str = Field(description="Concept name (2-4 words)")
    connections: List[str] = Field(
        default_factory=list,
        description="Labels of existing concepts this one elaborates on",
    )


class ExtractedConcepts(BaseModel):
    """Extract key concepts from a message."""

    concepts: List[ExtractedConcept] = Field(default_factory=list)


class SummaryDraft(BaseModel):
    """Extract structured insights from a brainstorming session."""

    summary: str = Field(description="A comprehensive summary of the session (2-3 paragraphs)")
    key_insights: List[str] = Field(description="3-5 key insights or findings from the discussion")
    main_ideas: List[str] = Field(description="3-7 main ideas or concepts discussed")
    action_items: List[str] = Field(description="3-5 specific actions that need to be taken")


EXTRACTION_SYSTEM_PROMPT = """You are a concept extraction expert for mind mapping. Extract 1-3 key concepts from messages and identify parent-child relationships.

Existing concepts: {existing}

RULES:
1. If the message ELABORATES on an existing concept, mark it as a child of that concept in "connections"
2. If the message introduces a NEW concept, connections can be empty
3. Return ONLY concepts that are NEW - no duplicates
4. Keep labels concise (2-4 words)

When someone says "for [existing concept]..." or "regarding [existing concept]..." or describes/expands an existing idea, that's elaboration.

Examples:
Message: "For the rewards program, we need tiered benefits"
-> {{"concepts": [{{"label": "Tiered Benefits", "connections": ["Rewards Program"]}}]}}

Message: "What about a mobile app?"
-> {{"concepts": [{{"label": "Mobile App", "connections": []}}]}}

Message: "The gamification could include daily challenges"
-> {{"concepts": [{{"label": "Daily Challenges", "connections": ["Gamification"]}}]}}"""

SUMMARY_SYSTEM_PROMPT = "You are an expert facilitator analyzing brainstorming sessions. Extract clear, actionable insights."

SUMMARY_USER_PROMPT = """Analyze this brainstorming session and extract structured insights.

Session Title: {title}
Session Goal: {goal}

Conversation:
{transcript}

Mindmap Concepts: {labels}

Provide a comprehensive analysis including:
1. Key insights and findings
2. Main ideas discussed
3. Action items that need to be done"""

IMAGE_PROMPT = """Create a clear, professional mind map diagram showing the key concepts from this brainstorming session: "{title}".

Main concepts to include: {labels}

Style: Clean, modern mind map with a central topic node and branches for each concept. Use a dark background with bright, readable text. Make it visually organized and easy to understand."""


def _normalise_history(history: List[Dict[str, str]]) -> List[Dict[str, str]]:
    msgs: List[Dict[str, str]] = []
    for m in history:
        r = m.get("role") or "user"
        c = m.get("content") or ""
        if r not in ("system", "user", "assistant"):
            r = "user"
        msgs.append({"role": r, "content": c})
    return msgs


def _content_text(res: Any) -> str:
    content = getattr(res, "content", res)
    if isinstance(content, list):
        # Multi-part responses: keep the text parts only.
        parts = [p.get("text", "") if isinstance(p, dict) else str(p) for p in content]
        content = "".join(parts)
    return str(content or "").strip()


LlmFactory = Callable[[str], Tuple[Any, str, str]]


class CompletionService:
    """Chat, structured and image completions behind the model router.

    Every failure surfaces as ``CompletionError``; nothing here retries or
    substitutes canned text.
    """

    def __init__(
        self,
        router: Optional[ModelRouter] = None,
        llm_factory: Optional[LlmFactory] = None,
        temperature: float = 0.8,
    ) -> None:
        self._router = router or ModelRouter()
        self._llm_factory = llm_factory or self._get_llm
        self._temperature = temperature

    def _get_llm(self, purpose: str) -> Tuple[Any, str, str]:
        try:
            selection = self._router.select_provider(purpose)
        except RuntimeError as exc:
            raise CompletionError(str(exc)) from exc
        if not ChatOpenAI:
            raise CompletionError("LLM client not available")
        api_key = self._router.api_key(selection)
        if selection.requires_api_key and not api_key:
            raise CompletionError("LLM not configured")
        base_url = self._router.base_url(selection)
        logger.info(
            "Using LLM provider name=%s model=%s base_url=%s purpose=%s",
            selection.name,
            selection.model,
            base_url,
            purpose,
        )
        temperature = self._temperature if purpose == "persona" else 0.2
        client = ChatOpenAI(
            api_key=api_key or "not-needed",
            base_url=base_url,
            model=selection.model,
            temperature=temperature,
        )
        return client, selection.name, selection.model

    async def reply(self, request: CompletionRequest) -> CompletionReply:
        llm, provider, model = self._llm_factory(request.purpose)
        msgs = [{"role": "system", "content": request.instructions}]
        msgs.extend(_normalise_history(request.history))
        msgs.append({"role": "user", "content": request.input})
        started = time.perf_counter()
        try:
            res = await llm.ainvoke(msgs)
        except Exception as exc:
            LOG.warning("llm_reply_failed", extra={"provider": provider, "model": model, "err": str(exc)})
            raise CompletionError(f"AI request failed: {exc}") from exc
        text = _content_text(res)
        if not text:
            LOG.warning("llm_empty_reply", extra={"provider": provider, "model": model})
            raise CompletionError("No response from AI")
        LOG.info(
            "llm_reply_ok",
            extra={"provider": provider, "model": model, "ms": int((time.perf_counter() - started) * 1000)},
        )
        return CompletionReply(reply=text, provider=provider, model=model)

    async def complete_structured(
        self, purpose: str, system: str, user: str, schema: Type[T]
    ) -> T:
        llm, provider, model = self._llm_factory(purpose)
        msgs = [{"role": "system", "content": system}, {"role": "user", "content": user}]
        try:
            structured = llm.with_structured_output(schema)
            result = await structured.ainvoke(msgs)
        except ValidationError as exc:
            LOG.warning("llm_schema_violation", extra={"provider": provider, "schema": schema.__name__})
            raise CompletionError(f"Malformed {schema.__name__} response") from exc
        except Exception as exc:
            LOG.warning("llm_structured_failed", extra={"provider": provider, "model": model, "err": str(exc)})
            raise CompletionError(f"AI request failed: {exc}") from exc
        if isinstance(result, dict):
            try:
                result = schema.model_validate(result)
            except ValidationError as exc:
                raise CompletionError(f"Malformed {schema.__name__} response") from exc
        if not isinstance(result, schema):
            raise CompletionError(f"Malformed {schema.__name__} response")
        return result

    async def extract_concepts(self, text: str, existing_labels: List[str]) -> ExtractedConcepts:
        system = EXTRACTION_SYSTEM_PROMPT.format(existing=", ".join(existing_labels))
        return await self.complete_structured("extraction", system, text, ExtractedConcepts)

    async def summarize(
        self,
        transcript: str,
        labels: List[str],
        title: str,
        goal: Optional[str],
    ) -> SummaryDraft:
        user = SUMMARY_USER_PROMPT.format(
            title=title,
            goal=goal or "",
            transcript=transcript,
            labels=", ".join(labels),
        )
        return await self.complete_structured("summary", SUMMARY_SYSTEM_PROMPT, user, SummaryDraft)

    async def render_image(self, prompt: str) -> str:
        """Render an illustration and return its URL (or a data URL)."""
        try:
            selection = self._router.select_provider("image")
        except RuntimeError as exc:
            raise CompletionError(str(exc)) from exc
        model = os.getenv("BRAINSTORM_IMAGE_MODEL", "gpt-image-1")
        url = f"{(self._router.base_url(selection) or '').rstrip('/')}/images/generations"
        headers = {
            "Authorization": f"Bearer {self._router.api_key(selection) or ''}",
            "Content-Type": "application/json",
        }
        payload = {"model": model, "prompt": prompt, "size": "1024x1024", "n": 1}

        def _post() -> Dict[str, Any]:
            resp = requests.post(url, json=payload, headers=headers, timeout=_IMAGE_TIMEOUT)
            resp.raise_for_status()
            return resp.json()

        try:
            data = await asyncio.to_thread(_post)
        except Exception as exc:
            LOG.warning("llm_image_failed", extra={"model": model, "err": str(exc)})
            raise CompletionError(f"Image API error: {exc}") from exc
        items = data.get("data") or []
        first = items[0] if items else {}
        if first.get("url"):
            return first["url"]
        if first.get("b64_json"):
            return "data:image/png;base64," + first["b64_json"]
        raise CompletionError("No image in AI response")


_service: Optional[CompletionService] = None


def get_completion_service() -> CompletionService:
    global _service
    if _service is None:
        _service = CompletionService()
    return _service


def reset_completion_service(service: Optional[CompletionService] = None) -> None:
    global _service
    _service = service
