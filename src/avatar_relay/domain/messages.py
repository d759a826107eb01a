from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .models import FinalizedUtterance, RecognitionEvent, ReplyResponse


class RelayMessageType(str, Enum):
    UTTERANCE = "utterance"
    REPLY = "reply"


@dataclass(frozen=True, slots=True)
class TextUtteranceCommand:
    text: str
    type: RelayMessageType = RelayMessageType.UTTERANCE


def transcript_payload(event: RecognitionEvent) -> dict[str, Any]:
    # One result per provider event; the array mirrors the provider format.
    return {
        "results": [
            {
                "alternatives": [{"transcript": event.text}],
                "isFinal": event.is_final,
                "speechFinal": event.speech_final,
            }
        ]
    }


def encode_transcript(event: RecognitionEvent) -> str:
    return json.dumps(transcript_payload(event), ensure_ascii=False)


def encode_utterance(utterance: FinalizedUtterance) -> str:
    return json.dumps(
        {
            "type": RelayMessageType.UTTERANCE.value,
            "text": utterance.text,
            "sessionId": utterance.session_id,
        },
        ensure_ascii=False,
    )


def encode_reply(response: ReplyResponse) -> str:
    payload = {"type": RelayMessageType.REPLY.value}
    payload.update(response.to_dict())
    return json.dumps(payload, ensure_ascii=False)


def decode_client_text(message: str) -> TextUtteranceCommand | None:
    """Parse a client text frame.

    Returns None for a well-formed command with nothing to do (empty text).
    Raises ValueError for anything that is not a known command.
    """
    try:
        data = json.loads(message)
    except json.JSONDecodeError as exc:
        raise ValueError(f"client message is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("client message must be a JSON object")

    msg_type = data.get("type")
    if msg_type != RelayMessageType.UTTERANCE.value:
        raise ValueError(f"unsupported client message type: {msg_type!r}")

    text = data.get("text")
    if not isinstance(text, str):
        raise ValueError("utterance message requires a string `text`")
    text = text.strip()
    if not text:
        return None
    return TextUtteranceCommand(text=text)
