from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Union

from src.brainstorm.errors import CompletionError
from src.brainstorm.security.auth import User, create_access_token
from src.brainstorm.services.completion import (
    CompletionReply,
    CompletionRequest,
    ExtractedConcept,
    ExtractedConcepts,
    SummaryDraft,
)


Reply = Union[str, Exception]


class FakeCompletionService:
    """Scripted stand-in for the completion service.

    ``replies`` are consumed in order (an Exception entry is raised instead);
    when exhausted, ``default_reply`` is used. ``concepts`` maps a substring of
    the analysed text to the concepts returned for it.
    """

    def __init__(self) -> None:
        self.replies: List[Reply] = []
        self.default_reply: Optional[Reply] = "Sounds good!"
        self.requests: List[CompletionRequest] = []
        self.concepts: Dict[str, List[ExtractedConcept]] = {}
        self.extraction_calls: List[Dict[str, Any]] = []
        self.extraction_error: Optional[Exception] = None
        self.summary: Union[SummaryDraft, Exception] = SummaryDraft(
            summary="The team explored mascot ideas.",
            key_insights=["Animals resonate", "Keep it simple", "Think local"],
            main_ideas=["Fox mascot", "Owl mascot", "Robot mascot"],
            action_items=["Sketch the fox", "Poll the team", "Check trademarks"],
        )
        self.summary_calls: List[Dict[str, Any]] = []
        self.image: Union[str, Exception] = "https://images.example/mindmap.png"
        self.image_prompts: List[str] = []
        self.on_reply: Optional[Callable[[CompletionRequest], None]] = None

    async def reply(self, request: CompletionRequest) -> CompletionReply:
        self.requests.append(request)
        if self.on_reply:
            self.on_reply(request)
        item = self.replies.pop(0) if self.replies else self.default_reply
        if isinstance(item, Exception):
            raise item
        if not item:
            raise CompletionError("No response from AI")
        return CompletionReply(reply=item, provider="fake", model="fake-1")

    async def extract_concepts(self, text: str, existing_labels: List[str]) -> ExtractedConcepts:
        self.extraction_calls.append({"text": text, "labels": list(existing_labels)})
        if self.extraction_error is not None:
            raise self.extraction_error
        for needle, concepts in self.concepts.items():
            if needle in text:
                return ExtractedConcepts(concepts=concepts)
        return ExtractedConcepts(concepts=[])

    async def summarize(self, transcript: str, labels: List[str], title: str, goal: Optional[str]) -> SummaryDraft:
        self.summary_calls.append({"transcript": transcript, "labels": labels, "title": title, "goal": goal})
        if isinstance(self.summary, Exception):
            raise self.summary
        return self.summary

    async def render_image(self, prompt: str) -> str:
        self.image_prompts.append(prompt)
        if isinstance(self.image, Exception):
            raise self.image
        return self.image


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def concept(label: str, *connections: str) -> ExtractedConcept:
    return ExtractedConcept(label=label, connections=list(connections))


def make_user(user_id: str = "u-alice", name: str = "Alice") -> User:
    return User(user_id=user_id, display_name=name)


def auth_headers(user: User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user)}"}
