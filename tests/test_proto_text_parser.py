"""Tests for the best-effort IDL text parser."""

# Third-Party
import pytest

# First-Party
from invoker.calls import CallType
from invoker.ProtoTextParser import ProtoTextParser

from conftest import SINGLE_LINE_ECHO


class TestProtoTextParser:
    """Test suite for ProtoTextParser."""

    @pytest.fixture
    def parser(self):
        return ProtoTextParser()

    def test_single_line_echo(self, parser):
        catalog = parser.parse(SINGLE_LINE_ECHO)

        assert list(catalog.services) == ["Echo"]
        method = catalog.services["Echo"].methods[0]
        assert method.name == "Echo"
        assert method.input_type == "EchoRequest"
        assert method.output_type == "EchoResponse"
        assert not method.is_client_streaming
        assert not method.is_server_streaming
        assert sorted(catalog.messages) == ["EchoRequest", "EchoResponse"]
        for message in catalog.messages.values():
            assert [(f.name, f.field_type, f.number, f.repeated) for f in message.fields] == [
                ("message", "string", 1, False)
            ]

    @pytest.mark.parametrize("text", ["", "   \n\n", "this is not a schema at all", "}}}{{"])
    def test_empty_or_garbage_input_gives_empty_catalog(self, parser, text):
        catalog = parser.parse(text)
        assert len(catalog.services) == 0
        assert len(catalog.messages) == 0

    def test_none_input(self, parser):
        catalog = parser.parse(None)
        assert catalog.service_names() == []

    def test_block_counts(self, parser, user_proto_text):
        catalog = parser.parse(user_proto_text)

        assert catalog.service_names() == ["Echo", "UserService"]
        assert set(catalog.messages) == {
            "EchoRequest",
            "EchoResponse",
            "User",
            "User.Address",
            "GetUserRequest",
            "ListUsersRequest",
            "CreateUsersResponse",
            "ChatMessage",
        }
        assert list(catalog.enums) == ["Role"]
        assert catalog.enums["Role"].values == (("ROLE_UNSPECIFIED", 0), ("ROLE_ADMIN", 1), ("ROLE_MEMBER", 2))

    def test_package_and_syntax_recorded(self, parser, user_proto_text):
        catalog = parser.parse(user_proto_text)
        assert catalog.package == "test.v1"
        assert catalog.syntax == "proto3"
        assert catalog.best_effort

    def test_streaming_flags(self, parser, user_proto_text):
        service = parser.parse(user_proto_text).services["UserService"]

        flags = {m.name: m.call_type for m in service.methods}
        assert flags == {
            "GetUser": CallType.UNARY,
            "ListUsers": CallType.SERVER_STREAMING,
            "CreateUsers": CallType.CLIENT_STREAMING,
            "Chat": CallType.BIDIRECTIONAL,
        }

    def test_space_before_parenthesis(self, parser):
        catalog = parser.parse("service S {\n  rpc Get (Req) returns (stream Resp);\n}")
        method = catalog.services["S"].methods[0]
        assert (method.name, method.input_type, method.output_type) == ("Get", "Req", "Resp")
        assert method.is_server_streaming and not method.is_client_streaming

    def test_fields(self, parser, user_proto_text):
        user = parser.parse(user_proto_text).messages["User"]

        assert len(user.fields) == 15
        assert user.field_by_name("tags").repeated
        assert user.field_by_name("tags").field_type == "string"
        assert not user.field_by_name("name").repeated
        attributes = user.field_by_name("attributes")
        assert attributes.field_type == "map<string, string>"
        assert attributes.repeated and attributes.is_map
        assert user.field_by_name("created_at").field_type == "google.protobuf.Timestamp"
        assert user.field_by_number(15).name == "phone"

    def test_nested_message_fields(self, parser, user_proto_text):
        address = parser.parse(user_proto_text).messages["User.Address"]
        assert [f.name for f in address.fields] == ["street", "city"]

    def test_unparseable_field_number_defaults_to_zero(self, parser):
        catalog = parser.parse("message M {\n  string name = abc;\n}")
        assert catalog.messages["M"].fields[0].number == 0

    def test_labels_options_and_comments(self, parser):
        text = """
        /* block
           comment */
        message M {
          option deprecated = true;
          reserved 4, 5;
          optional string a = 1; // trailing comment
          required int32 b = 2 [deprecated = true];
          // int32 c = 3;
        }
        """
        fields = parser.parse(text).messages["M"].fields
        assert [(f.name, f.field_type, f.number) for f in fields] == [("a", "string", 1), ("b", "int32", 2)]

    def test_rpc_with_option_block(self, parser):
        text = """
        service S {
          rpc A(Req) returns (Resp) {
            option idempotency_level = NO_SIDE_EFFECTS;
          }
          rpc B(Req) returns (Resp) {}
        }
        """
        assert [m.name for m in parser.parse(text).services["S"].methods] == ["A", "B"]

    def test_unclosed_scopes_are_flushed(self, parser):
        catalog = parser.parse("service S {\n rpc A(Req) returns (Resp);\nmessage Req {\n string x = 1;")
        assert "S" in catalog.services
        assert catalog.messages["Req"].fields[0].name == "x"

    def test_malformed_rpc_is_skipped(self, parser):
        catalog = parser.parse("service S {\n rpc Broken;\n rpc Ok(A) returns (B);\n}")
        assert [m.name for m in catalog.services["S"].methods] == ["Ok"]

    def test_names_stay_unqualified(self, parser, user_proto_text):
        catalog = parser.parse(user_proto_text)
        assert "test.v1.Echo" not in catalog.services
        assert catalog.find_service("Echo").full_name == "Echo"
