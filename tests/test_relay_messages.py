from __future__ import annotations

import json

import pytest

from avatar_relay.domain.messages import (
    TextUtteranceCommand,
    decode_client_text,
    encode_reply,
    encode_transcript,
    encode_utterance,
)
from avatar_relay.domain.models import (
    FinalizedUtterance,
    RecognitionEvent,
    ReplyResponse,
    UIAction,
)


def test_transcript_message_shape():
    message = json.loads(
        encode_transcript(RecognitionEvent(text="मुझे चाय", is_final=True, speech_final=False))
    )
    assert message == {
        "results": [
            {
                "alternatives": [{"transcript": "मुझे चाय"}],
                "isFinal": True,
                "speechFinal": False,
            }
        ]
    }


def test_utterance_and_reply_messages():
    utterance = json.loads(encode_utterance(FinalizedUtterance(text="hi", session_id="abc")))
    assert utterance == {"type": "utterance", "text": "hi", "sessionId": "abc"}

    reply = json.loads(
        encode_reply(
            ReplyResponse(
                spoken="Namaste!",
                hindi_line="नमस्ते",
                ui=UIAction(action="SHOW_TEXT", payload={"text": "नमस्ते"}),
            )
        )
    )
    assert reply == {
        "type": "reply",
        "spoken": "Namaste!",
        "hindiLine": "नमस्ते",
        "ui": {"action": "SHOW_TEXT", "payload": {"text": "नमस्ते"}},
    }


def test_decode_client_text_utterance():
    assert decode_client_text('{"type": "utterance", "text": "  Hello "}') == TextUtteranceCommand(
        text="Hello"
    )
    assert decode_client_text('{"type": "utterance", "text": ""}') is None


@pytest.mark.parametrize(
    "raw",
    [
        "Hello",
        "[1, 2]",
        '{"type": "ping"}',
        '{"text": "no type"}',
        '{"type": "utterance", "text": 5}',
    ],
)
def test_decode_client_text_rejects_unknown_messages(raw):
    with pytest.raises(ValueError):
        decode_client_text(raw)


def test_finalized_utterance_requires_text():
    with pytest.raises(ValueError):
        FinalizedUtterance(text="  ", session_id="abc")
