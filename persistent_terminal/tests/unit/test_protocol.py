"""
Unit Tests for the Client Session Protocol.

Test Coverage:
- Frame decoding
- Discriminated message parsing and field aliases
- Validation failures
- Server message builders
"""

import pytest

from persistent_terminal.core import protocol
from persistent_terminal.core.protocol import (
    AttachMessage,
    CreateMessage,
    InputMessage,
    ProtocolError,
    RenameMessage,
    ResizeMessage,
    decode_frame,
    parse_message,
)


class TestDecodeFrame:

    def test_decodes_object(self):
        assert decode_frame('{"type": "list"}') == {"type": "list"}

    def test_decodes_bytes(self):
        assert decode_frame(b'{"type": "ping"}') == {"type": "ping"}

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '"text"', ""])
    def test_rejects_non_objects(self, raw):
        with pytest.raises(ProtocolError):
            decode_frame(raw)


class TestParseMessage:

    def test_attach_uses_session_id_alias(self):
        message = parse_message({"type": "attach", "sessionId": "abc12345"})

        assert isinstance(message, AttachMessage)
        assert message.session_id == "abc12345"

    def test_create_name_optional(self):
        assert parse_message({"type": "create"}).name is None
        assert parse_message({"type": "create", "name": "dev"}) == CreateMessage(type="create", name="dev")

    def test_input_requires_data(self):
        with pytest.raises(ProtocolError):
            parse_message({"type": "input"})

        assert isinstance(parse_message({"type": "input", "data": "ls\r"}), InputMessage)

    def test_resize_defaults_to_zero(self):
        message = parse_message({"type": "resize", "cols": 80})

        assert isinstance(message, ResizeMessage)
        assert (message.cols, message.rows) == (80, 0)

    @pytest.mark.parametrize("cols, rows", [(70000, 30), (80, 65536), (-1, 24)])
    def test_resize_outside_winsize_range(self, cols, rows):
        with pytest.raises(ProtocolError):
            parse_message({"type": "resize", "cols": cols, "rows": rows})

    def test_rename_defaults_to_empty_name(self):
        message = parse_message({"type": "rename", "sessionId": "x"})

        assert isinstance(message, RenameMessage)
        assert message.name == ""

    def test_missing_session_id(self):
        with pytest.raises(ProtocolError, match="terminate"):
            parse_message({"type": "terminate"})

    def test_unknown_type(self):
        with pytest.raises(ProtocolError):
            parse_message({"type": "reboot"})

    def test_extra_fields_ignored(self):
        message = parse_message({"type": "ping", "timestamp": 123})

        assert message.type == "ping"

    def test_every_client_type_is_parseable(self):
        samples = {
            "auth": {"pin": "1234"},
            "list": {},
            "create": {},
            "attach": {"sessionId": "a"},
            "detach": {},
            "input": {"data": "x"},
            "resize": {"cols": 1, "rows": 1},
            "terminate": {"sessionId": "a"},
            "reactivate": {"sessionId": "a"},
            "delete": {"sessionId": "a"},
            "rename": {"sessionId": "a", "name": "n"},
            "ping": {},
        }
        assert set(samples) == protocol.CLIENT_MESSAGE_TYPES

        for msg_type, fields in samples.items():
            assert parse_message({"type": msg_type, **fields}).type == msg_type


class TestBuilders:

    def test_auth_required_reveals_only_length(self):
        assert protocol.auth_required(4) == {"type": "auth_required", "pinLength": 4}

    def test_attached(self):
        assert protocol.attached("id", "name", "running") == {
            "type": "attached",
            "sessionId": "id",
            "name": "name",
            "status": "running",
        }

    def test_output_and_history(self):
        assert protocol.output("id", "x") == {"type": "output", "sessionId": "id", "data": "x"}
        assert protocol.history("id", "x") == {"type": "history", "sessionId": "id", "data": "x"}

    def test_error(self):
        assert protocol.error("Session not found") == {"type": "error", "message": "Session not found"}
