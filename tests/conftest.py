"""Shared fixtures: schema text, catalogs and a fake transport."""

import os
import tempfile

# Keep test logs out of the working tree; read when invoker.constants is imported
os.environ.setdefault("INVOKER_LOG_FILE", os.path.join(tempfile.gettempdir(), "invoker-tests.log"))

# Third-Party
import grpc  # noqa: E402
import pytest  # noqa: E402

# First-Party
from invoker.ProtoTextParser import ProtoTextParser  # noqa: E402

USER_SERVICE_PROTO = """
syntax = "proto3";

package test.v1;

import "google/protobuf/timestamp.proto";
import "google/protobuf/wrappers.proto";

// Simple echo service
service Echo {
  rpc Echo(EchoRequest) returns (EchoResponse);
}

service UserService {
  rpc GetUser(GetUserRequest) returns (User);
  rpc ListUsers(ListUsersRequest) returns (stream User);
  rpc CreateUsers(stream User) returns (CreateUsersResponse);
  rpc Chat(stream ChatMessage) returns (stream ChatMessage);
}

message EchoRequest {
  string message = 1;
}

message EchoResponse {
  string message = 1;
  int32 count = 2;
}

enum Role {
  ROLE_UNSPECIFIED = 0;
  ROLE_ADMIN = 1;
  ROLE_MEMBER = 2;
}

message User {
  int64 id = 1;
  string name = 2;
  Role role = 3;
  repeated string tags = 4;
  map<string, string> attributes = 5;
  Address address = 6;
  bytes avatar = 7;
  double score = 8;
  float ratio = 9;
  uint32 age = 10;
  bool active = 11;
  google.protobuf.Timestamp created_at = 12;
  google.protobuf.StringValue nickname = 13;
  oneof contact {
    string email = 14;
    string phone = 15;
  }

  message Address {
    string street = 1;
    string city = 2;
  }
}

message GetUserRequest { int64 id = 1; }
message ListUsersRequest { int32 page_size = 1; }
message CreateUsersResponse { int32 created = 1; }
message ChatMessage { string user = 1; string text = 2; }
"""

SINGLE_LINE_ECHO = (
    "service Echo { rpc Echo(EchoRequest) returns (EchoResponse); } "
    "message EchoRequest { string message = 1; } "
    "message EchoResponse { string message = 1; }"
)


class FakeRpcError(grpc.RpcError):
    """Stand-in for grpc.aio.AioRpcError."""

    def __init__(self, code=grpc.StatusCode.UNAVAILABLE, details="connection refused"):
        super().__init__(details)
        self._code = code
        self._details = details

    def code(self):
        return self._code

    def details(self):
        return self._details


class FakeConnection:
    """Records calls and answers them from per-path handlers.

    unary and client-stream handlers return response bytes; server-stream
    handlers return an iterable of response bytes; bidirectional handlers map
    one request payload to a list of response payloads.
    """

    def __init__(self, handlers=None):
        self.handlers = handlers or {}
        self.calls = []
        self.closed = False
        self.stream_closed = False

    def _handler(self, path):
        handler = self.handlers[path]
        if isinstance(handler, Exception):
            raise handler
        return handler

    async def unary_unary(self, path, payload, metadata=None, timeout=None):
        self.calls.append(("unary_unary", path, payload, metadata, timeout))
        return self._handler(path)(payload)

    async def unary_stream(self, path, payload, metadata=None, timeout=None):
        self.calls.append(("unary_stream", path, payload, metadata, timeout))
        try:
            for response in self._handler(path)(payload):
                if isinstance(response, Exception):
                    raise response
                yield response
        finally:
            self.stream_closed = True

    async def stream_unary(self, path, request_iterator, metadata=None, timeout=None):
        self.calls.append(("stream_unary", path, None, metadata, timeout))
        handler = self._handler(path)
        payloads = [payload async for payload in request_iterator]
        return handler(payloads)

    async def stream_stream(self, path, request_iterator, metadata=None, timeout=None):
        self.calls.append(("stream_stream", path, None, metadata, timeout))
        handler = self._handler(path)
        try:
            async for payload in request_iterator:
                for response in handler(payload):
                    yield response
        finally:
            self.stream_closed = True

    async def close_server_connection(self):
        self.closed = True


@pytest.fixture
def user_proto_text():
    return USER_SERVICE_PROTO


@pytest.fixture
def idl_catalog():
    """Catalog parsed from IDL text, descriptors synthesized on demand."""
    return ProtoTextParser().parse(USER_SERVICE_PROTO)


@pytest.fixture
def proto_file(tmp_path):
    path = tmp_path / "user_service.proto"
    path.write_text(USER_SERVICE_PROTO)
    return path


@pytest.fixture
def fake_connection():
    return FakeConnection()
