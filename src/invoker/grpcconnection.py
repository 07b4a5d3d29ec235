import asyncio
from typing import AsyncIterator, Optional, Sequence, Tuple

import grpc
from grpc_reflection.v1alpha import reflection_pb2_grpc

from invoker.constants import CONNECT_TIMEOUT
from invoker.errors import GrpcConnectionError
from invoker.helper import helper

Metadata = Optional[Sequence[Tuple[str, str]]]


class grpcconnection(helper):
    """One grpc.aio channel to a target, carrying raw serialized messages."""

    def __init__(self, host: str, creds=None):
        super().__init__()
        self.raw_host = host or ""
        self.host = self.normalize_target(self.raw_host)
        self.creds = creds if isinstance(creds, dict) else {}
        self.channel: Optional[grpc.aio.Channel] = None

    @staticmethod
    def normalize_target(host: str) -> str:
        host = host.strip()
        for prefix in ("http://", "https://"):
            if host.startswith(prefix):
                host = host[len(prefix):]
        return host.rstrip("/")

    @property
    def use_tls(self) -> bool:
        return self.raw_host.strip().startswith("https://") or any(self.creds.values())

    def _read_file(self, key):
        path = self.creds.get(key)
        if not path:
            return None
        try:
            with open(path, 'rb') as f:
                return f.read()
        except OSError as e:
            raise GrpcConnectionError(f"Could not read {key} '{path}': {e}") from e

    def connect_to_server(self) -> grpc.aio.Channel:
        """Create the channel on first use. Connecting happens lazily."""
        if self.channel is not None:
            return self.channel
        if not self.host:
            raise GrpcConnectionError("Host is required")

        if not self.use_tls:
            self.channel = grpc.aio.insecure_channel(self.host)
            return self.channel

        private_key = self._read_file('client_key')
        certificate_chain = self._read_file('client_certificate')
        root_certificates = self._read_file('ca_certificate')

        if (private_key is None) != (certificate_chain is None):
            raise GrpcConnectionError("Both client_key and client_certificate are required for mutual TLS")

        credentials = grpc.ssl_channel_credentials(
            root_certificates=root_certificates,
            private_key=private_key,
            certificate_chain=certificate_chain,
        )
        self.channel = grpc.aio.secure_channel(self.host, credentials)
        return self.channel

    async def wait_ready(self, timeout: float = CONNECT_TIMEOUT):
        channel = self.connect_to_server()
        try:
            await asyncio.wait_for(channel.channel_ready(), timeout)
        except asyncio.TimeoutError as e:
            await self.close_server_connection()
            raise GrpcConnectionError(f"Could not connect to '{self.host}' within {timeout}s") from e

    async def close_server_connection(self):
        if self.channel is not None:
            channel, self.channel = self.channel, None
            await channel.close()

    def server_reflection_info(self, requests, timeout: Optional[float] = None):
        stub = reflection_pb2_grpc.ServerReflectionStub(self.connect_to_server())
        return stub.ServerReflectionInfo(requests, timeout=timeout)

    async def unary_unary(self, path: str, payload: bytes, metadata: Metadata = None,
                          timeout: Optional[float] = None) -> bytes:
        multicallable = self.connect_to_server().unary_unary(path)
        return await multicallable(payload, metadata=metadata, timeout=timeout)

    async def unary_stream(self, path: str, payload: bytes, metadata: Metadata = None,
                           timeout: Optional[float] = None) -> AsyncIterator[bytes]:
        call = self.connect_to_server().unary_stream(path)(payload, metadata=metadata, timeout=timeout)
        try:
            async for response in call:
                yield response
        finally:
            call.cancel()

    async def stream_unary(self, path: str, request_iterator, metadata: Metadata = None,
                           timeout: Optional[float] = None) -> bytes:
        multicallable = self.connect_to_server().stream_unary(path)
        return await multicallable(request_iterator, metadata=metadata, timeout=timeout)

    async def stream_stream(self, path: str, request_iterator, metadata: Metadata = None,
                            timeout: Optional[float] = None) -> AsyncIterator[bytes]:
        call = self.connect_to_server().stream_stream(path)(request_iterator, metadata=metadata, timeout=timeout)
        try:
            async for response in call:
                yield response
        finally:
            call.cancel()
