import json
from typing import Any, AsyncIterator, Dict, Optional

from invoker.calls import CallRequest, CallResponse, CallState, CallType
from invoker.CallEngine import CallEngine
from invoker.catalog import MethodDescriptor, SchemaCatalog, ServiceDescriptor
from invoker.constants import CONNECT_TIMEOUT, DEFAULT_TIMEOUT
from invoker.errors import InvokerError
from invoker.grpcconnection import grpcconnection
from invoker.grpcprotoclient import grpcprotoclient
from invoker.grpcreflectionclient import grpcreflectionclient
from invoker.helper import helper
from invoker.ProtobufConverter import ProtobufConverter
from invoker.ProtoTextParser import ProtoTextParser


class main(helper):
    """One target, one connection, one schema.

    The schema comes from IDL text, a .proto file compiled with protoc, or
    server reflection, in that order of preference.
    """

    def __init__(self, host, creds=None, proto_text: Optional[str] = None, proto_file: Optional[str] = None,
                 proto_import_path: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT):
        super().__init__()
        self.host = host
        self.creds = creds if isinstance(creds, dict) else {}
        self.connection = grpcconnection(host, self.creds)
        self.catalog: Optional[SchemaCatalog] = None
        self.resolver: Optional[grpcreflectionclient] = None

        if proto_text is not None:
            self.catalog = ProtoTextParser().parse(proto_text)
        elif proto_file:
            self.catalog = grpcprotoclient(proto_file, proto_import_path).get_catalog()
        else:
            self.resolver = grpcreflectionclient(host, self.creds, connection=self.connection, timeout=timeout)

        self.engine = CallEngine(self.connection, catalog=self.catalog, resolver=self.resolver, timeout=timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        await self.connection.close_server_connection()

    async def get_services(self) -> SchemaCatalog:
        return await self.engine.get_catalog()

    async def get_service(self, service_name: str) -> Optional[ServiceDescriptor]:
        catalog = await self.get_services()
        return catalog.find_service(service_name)

    async def get_method(self, service_name: str, method_name: str) -> Optional[MethodDescriptor]:
        catalog = await self.get_services()
        return catalog.find_method(service_name, method_name)

    async def get_message_auto_populate(self, service_name: str, method_name: str) -> Any:
        catalog = await self.get_services()
        _, method = catalog.resolve_method(service_name, method_name)
        return ProtobufConverter(catalog).build_template(method.input_type)

    def build_request(self, service_name: str, method_name: str, request_data=None, meta_data=None,
                      auth_data=None, call_type: CallType = CallType.UNARY) -> CallRequest:
        if isinstance(request_data, str):
            request_data = json.loads(request_data) if request_data.strip() else {}
        return CallRequest(
            target=self.host,
            service=service_name,
            method=method_name,
            message=request_data,
            metadata=meta_data or {},
            call_type=call_type,
            auth=auth_data or None,
        )

    async def execute_request(self, service_name: str, method_name: str, request_data=None, meta_data=None,
                              auth_data=None) -> CallResponse:
        request = self.build_request(service_name, method_name, request_data, meta_data, auth_data)
        return await self.engine.invoke_unary(request)

    def stream_request(self, service_name: str, method_name: str, request_data=None, meta_data=None,
                       auth_data=None) -> AsyncIterator[CallResponse]:
        request = self.build_request(service_name, method_name, request_data, meta_data, auth_data,
                                     CallType.SERVER_STREAMING)
        return self.engine.invoke_server_stream(request)

    def client_stream_request(self, service_name: str, method_name: str, messages, meta_data=None,
                              auth_data=None) -> AsyncIterator[CallResponse]:
        request = self.build_request(service_name, method_name, None, meta_data, auth_data,
                                     CallType.CLIENT_STREAMING)
        return self.engine.invoke_client_stream(request, messages)

    def bidirectional_request(self, service_name: str, method_name: str, messages, meta_data=None,
                              auth_data=None) -> AsyncIterator[CallResponse]:
        request = self.build_request(service_name, method_name, None, meta_data, auth_data,
                                     CallType.BIDIRECTIONAL)
        return self.engine.invoke_bidirectional(request, messages)

    async def execute(self, service_name: str, method_name: str, request_data=None, messages=None,
                      meta_data=None, auth_data=None) -> AsyncIterator[CallResponse]:
        """Run a method with the call type its descriptor declares."""
        try:
            method = await self.get_method(service_name, method_name)
        except InvokerError as e:
            self.log('execute', [service_name, method_name], exception=e)
            yield self.error_response(e, CallState.RESOLVING)
            return
        call_type = method.call_type if method is not None else CallType.UNARY
        request = self.build_request(service_name, method_name, request_data, meta_data, auth_data, call_type)
        stream = self.engine.execute(request, messages)
        try:
            async for response in stream:
                yield response
        finally:
            await stream.aclose()


def _engine_for(request: CallRequest, catalog: Optional[SchemaCatalog], creds) -> CallEngine:
    connection = grpcconnection(request.target, creds)
    resolver = None if catalog is not None else grpcreflectionclient(request.target, creds, connection=connection)
    return CallEngine(connection, catalog=catalog, resolver=resolver)


async def invoke_unary(request: CallRequest, catalog: Optional[SchemaCatalog] = None,
                       creds: Optional[Dict[str, str]] = None) -> CallResponse:
    engine = _engine_for(request, catalog, creds)
    try:
        return await engine.invoke_unary(request)
    finally:
        await engine.connection.close_server_connection()


async def _owned_stream(engine: CallEngine, stream) -> AsyncIterator[CallResponse]:
    try:
        async for response in stream:
            yield response
    finally:
        await stream.aclose()
        await engine.connection.close_server_connection()


def invoke_server_stream(request: CallRequest, catalog: Optional[SchemaCatalog] = None,
                         creds: Optional[Dict[str, str]] = None) -> AsyncIterator[CallResponse]:
    engine = _engine_for(request, catalog, creds)
    return _owned_stream(engine, engine.invoke_server_stream(request))


def invoke_client_stream(request: CallRequest, messages, catalog: Optional[SchemaCatalog] = None,
                         creds: Optional[Dict[str, str]] = None) -> AsyncIterator[CallResponse]:
    engine = _engine_for(request, catalog, creds)
    return _owned_stream(engine, engine.invoke_client_stream(request, messages))


def invoke_bidirectional(request: CallRequest, messages, catalog: Optional[SchemaCatalog] = None,
                         creds: Optional[Dict[str, str]] = None) -> AsyncIterator[CallResponse]:
    engine = _engine_for(request, catalog, creds)
    return _owned_stream(engine, engine.invoke_bidirectional(request, messages))


async def discover_services(address: str, creds: Optional[Dict[str, str]] = None,
                            timeout: float = CONNECT_TIMEOUT) -> SchemaCatalog:
    client = await grpcreflectionclient.connect(address, creds, timeout=timeout)
    try:
        return await client.descriptor_pool()
    finally:
        await client.close_server_connection()


def parse_idl(text: str) -> SchemaCatalog:
    return ProtoTextParser().parse(text)


def get_service(catalog: SchemaCatalog, name: str) -> Optional[ServiceDescriptor]:
    return catalog.find_service(name)


def get_method(catalog: SchemaCatalog, service_name: str, method_name: str) -> Optional[MethodDescriptor]:
    return catalog.find_method(service_name, method_name)
