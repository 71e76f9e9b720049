"""Tests for the chat endpoint wire protocol."""

import json

import pytest

from voicechat.serve.protocol import (
    ChatRequest,
    ChatResponse,
    ErrorResponse,
    InstructionProfile,
    ProtocolError,
    Role,
    Turn,
    parse_chat_request,
)


class TestTurn:
    """Test the Turn model."""

    def test_turn_gets_timestamp(self):
        turn = Turn(role="user", content="Hello")
        assert turn.role == Role.USER
        assert turn.timestamp.tzinfo is not None

    def test_empty_content_rejected(self):
        with pytest.raises(ValueError):
            Turn(role="user", content="")

    def test_unknown_role_rejected(self):
        with pytest.raises(ValueError):
            Turn(role="system", content="Hello")

    def test_round_trip_json(self):
        turn = Turn(role="assistant", content="Hi there")
        restored = Turn.model_validate(json.loads(turn.model_dump_json()))
        assert restored == turn


class TestChatRequest:
    """Test ChatRequest helpers."""

    def test_latest_user_turn(self):
        request = ChatRequest(
            conversation=[
                Turn(role="user", content="first"),
                Turn(role="assistant", content="reply"),
                Turn(role="user", content="second"),
                Turn(role="assistant", content="reply 2"),
            ]
        )
        assert request.latest_user_turn().content == "second"

    def test_latest_user_turn_none(self):
        request = ChatRequest(conversation=[Turn(role="assistant", content="Hi")])
        assert request.latest_user_turn() is None

    def test_optional_fields_default_to_none(self):
        request = ChatRequest(conversation=[])
        assert request.previous_response_id is None
        assert request.stream is None
        assert request.instruction_profile is None


class TestParseChatRequest:
    """Test request parsing."""

    def test_parse_json_string(self):
        body = json.dumps(
            {
                "conversation": [{"role": "user", "content": "Hello"}],
                "previous_response_id": "resp_1",
                "stream": False,
                "instruction_profile": "advanced",
            }
        )
        request = parse_chat_request(body)
        assert request.conversation[0].content == "Hello"
        assert request.previous_response_id == "resp_1"
        assert request.stream is False
        assert request.instruction_profile == InstructionProfile.ADVANCED

    def test_parse_bytes(self):
        body = b'{"conversation": [{"role": "user", "content": "Hi"}]}'
        assert parse_chat_request(body).conversation[0].content == "Hi"

    def test_parse_dict(self):
        request = parse_chat_request({"conversation": []})
        assert request.conversation == []

    def test_invalid_json(self):
        with pytest.raises(ProtocolError) as exc_info:
            parse_chat_request("not json")
        assert exc_info.value.code == "INVALID_JSON"

    def test_non_object_body(self):
        with pytest.raises(ProtocolError) as exc_info:
            parse_chat_request("[1, 2]")
        assert exc_info.value.code == "INVALID_MESSAGE"

    @pytest.mark.parametrize(
        "conversation", [None, "hello", {"role": "user"}, 42]
    )
    def test_conversation_not_a_list(self, conversation):
        with pytest.raises(ProtocolError) as exc_info:
            parse_chat_request({"conversation": conversation})
        assert exc_info.value.message == "Invalid conversation history"

    def test_missing_conversation(self):
        with pytest.raises(ProtocolError) as exc_info:
            parse_chat_request({"stream": True})
        assert exc_info.value.code == "INVALID_CONVERSATION"

    def test_invalid_turn(self):
        with pytest.raises(ProtocolError) as exc_info:
            parse_chat_request({"conversation": [{"role": "user"}]})
        assert exc_info.value.code == "VALIDATION_ERROR"
        assert exc_info.value.message == "Invalid conversation history"


class TestResponses:
    """Test response bodies."""

    def test_chat_response(self):
        response = ChatResponse(reply="Hi", audio="AAAA", previous_response_id="r1")
        data = response.model_dump()
        assert data == {"reply": "Hi", "audio": "AAAA", "previous_response_id": "r1"}

    def test_error_envelope_omits_unset_fields(self):
        assert ErrorResponse(error="boom").to_content() == {"error": "boom"}

    def test_rate_limit_envelope(self):
        body = ErrorResponse(error="slow down", shouldRetry=True, retryAfter=3)
        assert body.to_content() == {
            "error": "slow down",
            "shouldRetry": True,
            "retryAfter": 3,
        }
