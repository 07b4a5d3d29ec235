"""Tests for the inbound API, the main facade and the command line."""

# Standard
import json
from unittest.mock import AsyncMock, MagicMock, patch

# Third-Party
import pytest

# First-Party
import main as cli
from invoker import main as api
from invoker.calls import CallRequest, CallType
from invoker.errors import GrpcConnectionError

from conftest import USER_SERVICE_PROTO, FakeConnection

ECHO_PATH = "/test.v1.Echo/Echo"
LIST_PATH = "/test.v1.UserService/ListUsers"


@pytest.fixture
def handlers(idl_catalog):
    echo_request = idl_catalog.message_class("EchoRequest")
    echo_response = idl_catalog.message_class("EchoResponse")
    user = idl_catalog.message_class("User")

    def echo(payload):
        return echo_response(message=echo_request.FromString(payload).message).SerializeToString()

    return {
        ECHO_PATH: echo,
        LIST_PATH: lambda payload: [user(id=1).SerializeToString(), user(id=2).SerializeToString()],
    }


class TestModuleFunctions:

    def test_parse_idl_and_lookups(self):
        catalog = api.parse_idl(USER_SERVICE_PROTO)

        assert api.get_service(catalog, "UserService").full_name == "UserService"
        assert api.get_service(catalog, "Nope") is None
        assert api.get_method(catalog, "UserService", "Chat").call_type == CallType.BIDIRECTIONAL
        assert api.get_method(catalog, "UserService", "Nope") is None
        assert api.get_method(catalog, "Nope", "Chat") is None

    async def test_invoke_unary_closes_its_connection(self, idl_catalog, handlers):
        connection = FakeConnection(handlers)
        request = CallRequest(target="localhost:50051", service="Echo", method="Echo", message={"message": "hi"})

        with patch("invoker.main.grpcconnection", return_value=connection):
            response = await api.invoke_unary(request, catalog=idl_catalog)

        assert response.success
        assert response.data == {"message": "hi", "count": 0}
        assert connection.closed

    async def test_invoke_server_stream_closes_its_connection(self, idl_catalog, handlers):
        connection = FakeConnection(handlers)
        request = CallRequest(target="localhost:50051", service="UserService", method="ListUsers",
                              message={}, call_type=CallType.SERVER_STREAMING)

        with patch("invoker.main.grpcconnection", return_value=connection):
            responses = [r async for r in api.invoke_server_stream(request, catalog=idl_catalog)]

        assert [r.data.get("id") for r in responses[:2]] == [1, 2]
        assert responses[-1].data["total_messages"] == 2
        assert connection.closed

    async def test_discover_services(self, idl_catalog):
        client = MagicMock()
        client.descriptor_pool = AsyncMock(return_value=idl_catalog)
        client.close_server_connection = AsyncMock()

        with patch.object(api.grpcreflectionclient, "connect", AsyncMock(return_value=client)) as connect:
            catalog = await api.discover_services("localhost:50051", timeout=2)

        assert catalog is idl_catalog
        connect.assert_awaited_once_with("localhost:50051", None, timeout=2)
        client.close_server_connection.assert_awaited_once()

    async def test_discover_services_closes_on_failure(self):
        client = MagicMock()
        client.descriptor_pool = AsyncMock(side_effect=GrpcConnectionError("no reflection"))
        client.close_server_connection = AsyncMock()

        with patch.object(api.grpcreflectionclient, "connect", AsyncMock(return_value=client)):
            with pytest.raises(GrpcConnectionError):
                await api.discover_services("localhost:50051")

        client.close_server_connection.assert_awaited_once()


class TestMainFacade:

    @pytest.fixture
    def client(self, handlers):
        facade = api.main("localhost:50051", proto_text=USER_SERVICE_PROTO)
        fake = FakeConnection(handlers)
        facade.connection = fake
        facade.engine.connection = fake
        return facade

    async def test_execute_request(self, client):
        response = await client.execute_request("Echo", "Echo", '{"message": "hi"}', {"x-trace": "1"})

        assert response.success
        assert response.data["message"] == "hi"
        assert client.connection.calls[0][3] == [("x-trace", "1")]

    async def test_execute_picks_the_declared_call_type(self, client):
        responses = [r async for r in client.execute("UserService", "ListUsers", {})]

        assert len(responses) == 3
        assert client.connection.calls[0][0] == "unary_stream"

    async def test_execute_unknown_method(self, client):
        responses = [r async for r in client.execute("Echo", "Nope", {})]

        assert len(responses) == 1
        assert not responses[0].success

    async def test_auto_populate(self, client):
        assert await client.get_message_auto_populate("Echo", "Echo") == {"message": ""}

    async def test_lookups(self, client):
        assert (await client.get_service("Echo")).full_name == "Echo"
        assert (await client.get_method("UserService", "ListUsers")).is_server_streaming

    async def test_context_manager_closes(self, client):
        async with client:
            pass
        assert client.connection.closed

    async def test_reflection_failure_is_a_response(self):
        facade = api.main("localhost:50051")
        facade.resolver.descriptor_pool = AsyncMock(side_effect=GrpcConnectionError("reflection unavailable"))

        responses = [r async for r in facade.execute("Echo", "Echo", {})]

        assert len(responses) == 1
        assert responses[0].status_message == "GrpcConnectionError while resolving"


class TestCommandLine:

    def test_parse(self, proto_file, capsys):
        assert cli.run(["parse", str(proto_file)]) == 0

        output = json.loads(capsys.readouterr().out)
        assert [s["name"] for s in output["services"]] == ["Echo", "UserService"]
        assert output["package"] == "test.v1"

    def test_missing_file(self, tmp_path, capsys):
        assert cli.run(["parse", str(tmp_path / "nope.proto")]) == 1
        assert json.loads(capsys.readouterr().out)["success"] is False

    def test_bad_metadata(self, proto_file, capsys):
        code = cli.run(["call", "localhost:50051", "Echo", "Echo", "--idl", str(proto_file), "--metadata", "novalue"])

        assert code == 1
        assert json.loads(capsys.readouterr().out)["error"]["type"] == "ValueError"

    def test_parse_metadata(self):
        assert cli.parse_metadata(["a=1", " b = two "]) == {"a": "1", "b": "two"}
        with pytest.raises(ValueError):
            cli.parse_metadata(["oops"])

    def test_creds_from_args(self):
        args = cli.build_parser().parse_args(["discover", "localhost:1", "--ca-certificate", "ca.pem"])
        assert cli.creds_from_args(args) == {"ca_certificate": "ca.pem"}
