import asyncio
from collections import OrderedDict
from typing import Dict, List, Optional

import grpc
from google.protobuf import descriptor_pb2, descriptor_pool
from google.protobuf.message import DecodeError
# Registers the well-known files in the default pool
from google.protobuf import (  # noqa: F401
    any_pb2,
    duration_pb2,
    empty_pb2,
    field_mask_pb2,
    struct_pb2,
    timestamp_pb2,
    wrappers_pb2,
)
from grpc_reflection.v1alpha import reflection_pb2

from invoker.catalog import MethodDescriptor, SchemaCatalog, ServiceDescriptor
from invoker.constants import CONNECT_TIMEOUT, DEFAULT_TIMEOUT, MAX_DEPENDENCY_PASSES, REFLECTION_SERVICE_PREFIX
from invoker.errors import DescriptorError, GrpcConnectionError
from invoker.grpcconnection import grpcconnection
from invoker.helper import helper
from invoker.ProtobufConverter import ProtobufConverter


class grpcreflectionclient(helper):
    """Builds a SchemaCatalog from a live server through server reflection.

    The catalog is fetched once per instance. Concurrent first callers await
    the same fetch; a failed fetch is retried by the next caller.
    """

    def __init__(self, host, creds=None, connection: Optional[grpcconnection] = None,
                 timeout: float = DEFAULT_TIMEOUT):
        super().__init__()
        self.host = host
        self.creds = creds if isinstance(creds, dict) else {}
        self.connection = connection if connection is not None else grpcconnection(host, self.creds)
        self.timeout = timeout
        self._catalog: Optional[SchemaCatalog] = None
        self._fetch_task: Optional[asyncio.Future] = None

    @classmethod
    async def connect(cls, host, creds=None, timeout: float = CONNECT_TIMEOUT) -> "grpcreflectionclient":
        client = cls(host, creds)
        await client.connection.wait_ready(timeout)
        return client

    async def close_server_connection(self):
        await self.connection.close_server_connection()

    async def descriptor_pool(self) -> SchemaCatalog:
        if self._catalog is not None:
            return self._catalog

        if self._fetch_task is None:
            self._fetch_task = asyncio.ensure_future(self._fetch_catalog())
        task = self._fetch_task
        try:
            catalog = await asyncio.shield(task)
        except Exception:
            if self._fetch_task is task:
                self._fetch_task = None
            raise

        self._catalog = catalog
        return catalog

    async def _reflection_exchange(self, request) -> list:
        call = self.connection.server_reflection_info(iter([request]), timeout=self.timeout)
        return [response async for response in call]

    async def list_reflection_services(self) -> List[str]:
        request = reflection_pb2.ServerReflectionRequest(list_services="")
        try:
            responses = await self._reflection_exchange(request)
        except grpc.RpcError as e:
            self.log(function_name='list_reflection_services', args=[self.host], exception=e)
            details = e.details() if callable(getattr(e, 'details', None)) else str(e)
            raise GrpcConnectionError(f"Server reflection is not reachable on '{self.connection.host}': {details}") from e

        services = []
        for response in responses:
            if response.HasField('error_response'):
                raise GrpcConnectionError(
                    f"Server reflection refused to list services: {response.error_response.error_message}"
                )
            services.extend(s.name for s in response.list_services_response.service)
        return services

    async def get_service_descriptor(self, symbol: str) -> List[bytes]:
        """Serialized FileDescriptorProtos for the file defining `symbol`."""
        return await self._file_request(reflection_pb2.ServerReflectionRequest(file_containing_symbol=symbol))

    async def get_file_by_name(self, file_name: str) -> List[bytes]:
        return await self._file_request(reflection_pb2.ServerReflectionRequest(file_by_filename=file_name))

    async def _file_request(self, request) -> List[bytes]:
        blobs = []
        for response in await self._reflection_exchange(request):
            if response.HasField('error_response'):
                self.logger.warning(f"Reflection error: {response.error_response.error_message}")
                continue
            blobs.extend(response.file_descriptor_response.file_descriptor_proto)
        return blobs

    def _decode_file_descriptor(self, blob: bytes) -> Optional[descriptor_pb2.FileDescriptorProto]:
        fd_proto = descriptor_pb2.FileDescriptorProto()
        try:
            fd_proto.ParseFromString(blob)
        except DecodeError as e:
            error = DescriptorError(f"Skipping undecodable file descriptor: {e}")
            self.log(function_name='_decode_file_descriptor', exception=error)
            return None
        return fd_proto

    async def _fetch_catalog(self) -> SchemaCatalog:
        services = await self.list_reflection_services()

        fd_protos: "OrderedDict[str, descriptor_pb2.FileDescriptorProto]" = OrderedDict()
        for service_name in services:
            if service_name.startswith(REFLECTION_SERVICE_PREFIX):
                continue
            try:
                blobs = await self.get_service_descriptor(service_name)
            except grpc.RpcError as e:
                self.log(function_name='_fetch_catalog', args=[service_name], exception=e)
                continue
            for blob in blobs:
                fd_proto = self._decode_file_descriptor(blob)
                if fd_proto is not None:
                    fd_protos.setdefault(fd_proto.name, fd_proto)

        pool = descriptor_pool.DescriptorPool()
        loaded = await self._try_add_file_descriptor_with_deps(pool, fd_protos)
        catalog = SchemaCatalog.from_pool(pool, loaded)
        self.log(function_name='descriptor_pool', args=[self.host], output=catalog.service_names())
        return catalog

    async def _fetch_dependency(self, file_name: str) -> List[descriptor_pb2.FileDescriptorProto]:
        try:
            blobs = await self.get_file_by_name(file_name)
        except grpc.RpcError as e:
            self.log(function_name='_fetch_dependency', args=[file_name], exception=e)
            blobs = []

        fetched = [fd for fd in map(self._decode_file_descriptor, blobs) if fd is not None]
        if any(fd.name == file_name for fd in fetched):
            return fetched

        # Servers often do not publish the well-known files
        try:
            file_descriptor = descriptor_pool.Default().FindFileByName(file_name)
        except KeyError:
            return fetched
        fd_proto = descriptor_pb2.FileDescriptorProto()
        file_descriptor.CopyToProto(fd_proto)
        return fetched + [fd_proto]

    async def _try_add_file_descriptor_with_deps(self, pool, fd_protos) -> List[str]:
        """Add files to `pool` in dependency order, fetching missing imports.

        Returns the names of the files that made it into the pool.
        """
        pending: Dict[str, descriptor_pb2.FileDescriptorProto] = OrderedDict(fd_protos)
        requested = set(pending)

        for _ in range(MAX_DEPENDENCY_PASSES):
            missing = [dep for fd in list(pending.values()) for dep in fd.dependency if dep not in requested]
            if not missing:
                break
            for dep in OrderedDict.fromkeys(missing):
                requested.add(dep)
                for fd_proto in await self._fetch_dependency(dep):
                    if fd_proto.name not in pending:
                        pending[fd_proto.name] = fd_proto
                        requested.add(fd_proto.name)

        loaded: List[str] = []
        progress = True
        while pending and progress:
            progress = False
            for name, fd_proto in list(pending.items()):
                if not all(dep in loaded for dep in fd_proto.dependency):
                    continue
                del pending[name]
                progress = True
                try:
                    pool.AddSerializedFile(fd_proto.SerializeToString())
                except (TypeError, ValueError, KeyError) as e:
                    self.log(function_name='_try_add_file_descriptor_with_deps', args=[name], exception=e)
                    continue
                loaded.append(name)

        for name in pending:
            self.logger.warning(f"Skipping '{name}': its imports could not be loaded")
        return loaded

    async def resolve_method(self, service_name: str, method_name: str):
        catalog = await self.descriptor_pool()
        return catalog.resolve_method(service_name, method_name)

    async def get_service(self, service_name: str) -> Optional[ServiceDescriptor]:
        catalog = await self.descriptor_pool()
        return catalog.find_service(service_name)

    async def get_method(self, service_name: str, method_name: str) -> Optional[MethodDescriptor]:
        catalog = await self.descriptor_pool()
        return catalog.find_method(service_name, method_name)

    async def get_service_details(self) -> Dict[str, dict]:
        catalog = await self.descriptor_pool()
        return {
            service.full_name: {
                "full_name": service.full_name,
                "name": service.name,
                "methods": [m.name for m in service.methods],
            }
            for service in catalog.services.values()
        }

    async def get_template_from_method_name(self, service_name: str, method_name: str):
        service, method = await self.resolve_method(service_name, method_name)
        catalog = await self.descriptor_pool()
        return ProtobufConverter(catalog).build_template(method.input_type)
