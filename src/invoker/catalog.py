"""
In-memory schema catalog shared by every discovery path.

A catalog holds services, messages and enums keyed by full name. Catalogs built
from a protobuf DescriptorPool (server reflection, protoc) keep that pool for
encoding; catalogs parsed from IDL text synthesize one on first use.
"""
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from google.protobuf import descriptor_pool
from google.protobuf.descriptor import FieldDescriptor as PbFieldDescriptor
from google.protobuf.message_factory import GetMessageClass

from invoker.calls import CallType
from invoker.errors import DescriptorError, NotFoundError
from invoker.helper import helper

helpercls = helper()


_SCALAR_NAMES = {
    PbFieldDescriptor.TYPE_DOUBLE: "double",
    PbFieldDescriptor.TYPE_FLOAT: "float",
    PbFieldDescriptor.TYPE_INT64: "int64",
    PbFieldDescriptor.TYPE_UINT64: "uint64",
    PbFieldDescriptor.TYPE_INT32: "int32",
    PbFieldDescriptor.TYPE_FIXED64: "fixed64",
    PbFieldDescriptor.TYPE_FIXED32: "fixed32",
    PbFieldDescriptor.TYPE_BOOL: "bool",
    PbFieldDescriptor.TYPE_STRING: "string",
    PbFieldDescriptor.TYPE_BYTES: "bytes",
    PbFieldDescriptor.TYPE_UINT32: "uint32",
    PbFieldDescriptor.TYPE_SFIXED32: "sfixed32",
    PbFieldDescriptor.TYPE_SFIXED64: "sfixed64",
    PbFieldDescriptor.TYPE_SINT32: "sint32",
    PbFieldDescriptor.TYPE_SINT64: "sint64",
}


@dataclass(frozen=True)
class FieldDescriptor:
    name: str
    field_type: str
    number: int
    repeated: bool = False

    @property
    def is_map(self) -> bool:
        return self.field_type.startswith("map<")


@dataclass(frozen=True)
class MessageDescriptor:
    full_name: str
    fields: Tuple[FieldDescriptor, ...] = ()

    @property
    def name(self) -> str:
        return self.full_name.rsplit(".", 1)[-1]

    def field_by_name(self, name: str) -> Optional[FieldDescriptor]:
        return next((f for f in self.fields if f.name == name), None)

    def field_by_number(self, number: int) -> Optional[FieldDescriptor]:
        return next((f for f in self.fields if f.number == number), None)


@dataclass(frozen=True)
class EnumDescriptor:
    full_name: str
    values: Tuple[Tuple[str, int], ...] = ()


@dataclass(frozen=True)
class MethodDescriptor:
    name: str
    input_type: str
    output_type: str
    is_client_streaming: bool = False
    is_server_streaming: bool = False

    @property
    def call_type(self) -> CallType:
        return CallType.from_flags(self.is_client_streaming, self.is_server_streaming)


@dataclass(frozen=True)
class ServiceDescriptor:
    full_name: str
    methods: Tuple[MethodDescriptor, ...] = ()

    @property
    def name(self) -> str:
        return self.full_name.rsplit(".", 1)[-1]

    def find_method(self, name: str) -> Optional[MethodDescriptor]:
        return next((m for m in self.methods if m.name == name), None)


class SchemaCatalog:
    """Immutable set of services, messages and enums.

    `best_effort` catalogs (parsed from IDL text) may reference types that are
    not defined; such references fail only when they are used.
    """

    def __init__(
        self,
        services: Iterable[ServiceDescriptor] = (),
        messages: Iterable[MessageDescriptor] = (),
        enums: Iterable[EnumDescriptor] = (),
        package: str = "",
        syntax: str = "proto3",
        pool: Optional[descriptor_pool.DescriptorPool] = None,
        best_effort: bool = False,
    ):
        self._services = MappingProxyType({s.full_name: s for s in services})
        self._messages = MappingProxyType({m.full_name: m for m in messages})
        self._enums = MappingProxyType({e.full_name: e for e in enums})
        self._package = package
        self._syntax = syntax
        self._pool = pool
        self._pool_error: Optional[DescriptorError] = None
        self._unresolved: Mapping[str, Mapping[str, str]] = MappingProxyType({})
        self._best_effort = best_effort

    @classmethod
    def from_pool(cls, pool: descriptor_pool.DescriptorPool, file_names: Iterable[str]) -> "SchemaCatalog":
        """Build a catalog from files already loaded into `pool`."""
        services: Dict[str, ServiceDescriptor] = {}
        messages: Dict[str, MessageDescriptor] = {}
        enums: Dict[str, EnumDescriptor] = {}

        def add_enum(enum_desc):
            enums[enum_desc.full_name] = EnumDescriptor(
                enum_desc.full_name, tuple((v.name, v.number) for v in enum_desc.values)
            )

        def add_message(msg_desc):
            if msg_desc.GetOptions().map_entry:
                return
            messages[msg_desc.full_name] = MessageDescriptor(
                msg_desc.full_name,
                tuple(
                    FieldDescriptor(
                        name=f.name,
                        field_type=field_type_name(f),
                        number=f.number,
                        repeated=f.is_repeated,
                    )
                    for f in msg_desc.fields
                ),
            )
            for nested in msg_desc.nested_types:
                add_message(nested)
            for nested_enum in msg_desc.enum_types:
                add_enum(nested_enum)

        for file_name in file_names:
            try:
                file_desc = pool.FindFileByName(file_name)
            except KeyError:
                helpercls.logger.warning(f"File '{file_name}' is not in the descriptor pool, skipping")
                continue

            for msg_desc in file_desc.message_types_by_name.values():
                add_message(msg_desc)
            for enum_desc in file_desc.enum_types_by_name.values():
                add_enum(enum_desc)
            for svc in file_desc.services_by_name.values():
                services[svc.full_name] = ServiceDescriptor(
                    svc.full_name,
                    tuple(
                        MethodDescriptor(
                            name=m.name,
                            input_type=m.input_type.full_name,
                            output_type=m.output_type.full_name,
                            is_client_streaming=m.client_streaming,
                            is_server_streaming=m.server_streaming,
                        )
                        for m in svc.methods
                    ),
                )

        return cls(services.values(), messages.values(), enums.values(), pool=pool)

    @property
    def services(self) -> Mapping[str, ServiceDescriptor]:
        return self._services

    @property
    def messages(self) -> Mapping[str, MessageDescriptor]:
        return self._messages

    @property
    def enums(self) -> Mapping[str, EnumDescriptor]:
        return self._enums

    @property
    def package(self) -> str:
        return self._package

    @property
    def syntax(self) -> str:
        return self._syntax

    @property
    def best_effort(self) -> bool:
        return self._best_effort

    def service_names(self) -> List[str]:
        return list(self._services)

    def get_service(self, full_name: str) -> Optional[ServiceDescriptor]:
        return self._services.get(full_name)

    def find_service(self, name: str) -> Optional[ServiceDescriptor]:
        """Exact full name, then exact short name, then dotted suffix.

        Best-effort catalogs key services without their package, so a name
        qualified with that package is matched with it stripped. Ties inside a
        tier go to the lexicographically smallest full name.
        """
        if name in self._services:
            return self._services[name]
        prefix = self._package + "."
        if self._best_effort and self._package and name.startswith(prefix):
            stripped = name[len(prefix):]
            if stripped in self._services:
                return self._services[stripped]

        ordered = sorted(self._services.values(), key=lambda s: s.full_name)
        short = next((s for s in ordered if s.name == name), None)
        if short is not None:
            return short
        return next((s for s in ordered if self.qualified_name(s.full_name).endswith("." + name)), None)

    def find_method(self, service: Union[str, ServiceDescriptor], method_name: str) -> Optional[MethodDescriptor]:
        if isinstance(service, str):
            service = self.find_service(service)
        if service is None:
            return None
        return service.find_method(method_name)

    def resolve_method(self, service_name: str, method_name: str) -> Tuple[ServiceDescriptor, MethodDescriptor]:
        service = self.find_service(service_name)
        if service is None:
            raise NotFoundError("service", service_name, self.service_names())

        method = service.find_method(method_name)
        if method is None:
            raise NotFoundError("method", method_name, [m.name for m in service.methods], scope=service.full_name)
        return service, method

    def get_message(self, name: str) -> Optional[MessageDescriptor]:
        return self._messages.get(name.lstrip("."))

    def resolve_message(self, name: str) -> MessageDescriptor:
        message = self.get_message(name)
        if message is None:
            raise DescriptorError(f"Message type '{name}' is not defined in the schema")
        return message

    def qualified_name(self, name: str) -> str:
        """Name of a catalog type inside the protobuf descriptor pool."""
        name = name.lstrip(".")
        if not self._best_effort or not self._package or name.startswith(self._package + "."):
            return name
        if name in self._messages or name in self._services or name in self._enums:
            return f"{self._package}.{name}"
        return name

    def wire_path(self, service: ServiceDescriptor, method: MethodDescriptor) -> str:
        return f"/{self.qualified_name(service.full_name)}/{method.name}"

    @property
    def descriptor_pool(self) -> descriptor_pool.DescriptorPool:
        if self._pool is None:
            if self._pool_error is not None:
                raise self._pool_error
            # Deferred import, the builder needs the catalog types defined above
            from invoker.ProtoDescriptorBuilder import ProtoDescriptorBuilder

            try:
                pool, unresolved = ProtoDescriptorBuilder(self).build_pool()
            except DescriptorError as e:
                self._pool_error = e
                raise
            self._unresolved = MappingProxyType({k: MappingProxyType(v) for k, v in unresolved.items()})
            self._pool = pool
        return self._pool

    def unresolved_fields(self, proto_full_name: str) -> Mapping[str, str]:
        """Fields left out of the synthesized descriptor for `proto_full_name`."""
        return self._unresolved.get(proto_full_name, {})

    def message_class(self, name: str):
        pool = self.descriptor_pool
        qualified = self.qualified_name(name)
        try:
            return GetMessageClass(pool.FindMessageTypeByName(qualified))
        except KeyError as e:
            raise DescriptorError(f"Message type '{name}' could not be resolved: {e}") from e

    def to_dict(self) -> Dict[str, object]:
        return {
            "package": self._package,
            "services": [
                {
                    "name": s.full_name,
                    "methods": [
                        {
                            "name": m.name,
                            "input_type": m.input_type,
                            "output_type": m.output_type,
                            "is_client_streaming": m.is_client_streaming,
                            "is_server_streaming": m.is_server_streaming,
                        }
                        for m in s.methods
                    ],
                }
                for s in self._services.values()
            ],
            "messages": [
                {
                    "name": m.full_name,
                    "fields": [
                        {"name": f.name, "field_type": f.field_type, "number": f.number, "repeated": f.repeated}
                        for f in m.fields
                    ],
                }
                for m in self._messages.values()
            ],
        }


def field_type_name(field) -> str:
    """Human readable type of a protobuf field descriptor."""
    message_type = field.message_type
    if message_type is not None and message_type.GetOptions().map_entry:
        key = field_type_name(message_type.fields_by_name["key"])
        value = field_type_name(message_type.fields_by_name["value"])
        return f"map<{key}, {value}>"
    if field.type in (PbFieldDescriptor.TYPE_MESSAGE, PbFieldDescriptor.TYPE_GROUP):
        return message_type.full_name
    if field.type == PbFieldDescriptor.TYPE_ENUM:
        return field.enum_type.full_name
    return _SCALAR_NAMES.get(field.type, "unknown")
