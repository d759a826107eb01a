from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class RecognitionEvent:
    text: str
    is_final: bool
    speech_final: bool = False


@dataclass(frozen=True, slots=True)
class FinalizedUtterance:
    text: str
    session_id: str

    def __post_init__(self) -> None:
        if not self.text.strip():
            raise ValueError("FinalizedUtterance requires non-empty text")


@dataclass(frozen=True, slots=True)
class UIAction:
    action: str = "NONE"
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"action": self.action, "payload": dict(self.payload)}


@dataclass(frozen=True, slots=True)
class ReplyPlan:
    speech_text: str
    hindi_line: str = ""
    ui_action: UIAction = field(default_factory=UIAction)
    model: str | None = None


@dataclass(frozen=True, slots=True)
class ReplyResponse:
    spoken: str
    hindi_line: str
    ui: UIAction
    is_fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"spoken": self.spoken, "hindiLine": self.hindi_line, "ui": self.ui.to_dict()}


@dataclass(frozen=True, slots=True)
class ConversationTurn:
    user_text: str
    ai_text: str
    created_at: float | None = None  # wall-clock seconds

    def as_messages(self) -> list[dict[str, str]]:
        messages = []
        if self.user_text:
            messages.append({"role": "user", "content": self.user_text})
        if self.ai_text:
            messages.append({"role": "assistant", "content": self.ai_text})
        return messages


@dataclass(frozen=True, slots=True)
class AvatarSession:
    session_id: str
    url: str
    access_token: str

    def to_dict(self) -> dict[str, str]:
        return {"session_id": self.session_id, "url": self.url, "access_token": self.access_token}
