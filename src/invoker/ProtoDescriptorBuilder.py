import re
from collections import OrderedDict
from typing import Dict, Optional, Tuple

from google.protobuf import descriptor_pb2, descriptor_pool
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

from invoker.errors import DescriptorError
from invoker.helper import helper

FieldProto = descriptor_pb2.FieldDescriptorProto

SCALAR_WIRE_TYPES = {
    "double": FieldProto.TYPE_DOUBLE,
    "float": FieldProto.TYPE_FLOAT,
    "int64": FieldProto.TYPE_INT64,
    "uint64": FieldProto.TYPE_UINT64,
    "int32": FieldProto.TYPE_INT32,
    "fixed64": FieldProto.TYPE_FIXED64,
    "fixed32": FieldProto.TYPE_FIXED32,
    "bool": FieldProto.TYPE_BOOL,
    "string": FieldProto.TYPE_STRING,
    "bytes": FieldProto.TYPE_BYTES,
    "uint32": FieldProto.TYPE_UINT32,
    "sfixed32": FieldProto.TYPE_SFIXED32,
    "sfixed64": FieldProto.TYPE_SFIXED64,
    "sint32": FieldProto.TYPE_SINT32,
    "sint64": FieldProto.TYPE_SINT64,
}

MAP_KEY_TYPES = (
    "int64", "uint64", "int32", "fixed64", "fixed32", "bool", "string",
    "uint32", "sfixed32", "sfixed64", "sint32", "sint64",
)

MAX_FIELD_NUMBER = 536870911
RESERVED_FIELD_NUMBERS = range(19000, 20000)

_MAP_TYPE = re.compile(r"^map<\s*([\w.]+)\s*,\s*([\w.]+)\s*>$")


def json_name(name: str) -> str:
    """lowerCamel JSON name, computed the way protoc does."""
    parts = name.split("_")
    return parts[0] + "".join(p[:1].upper() + p[1:] for p in parts[1:])


def map_entry_name(field_name: str) -> str:
    return "".join(p[:1].upper() + p[1:] for p in field_name.split("_")) + "Entry"


class ProtoDescriptorBuilder(helper):
    """Synthesizes a FileDescriptorProto for a catalog parsed from IDL text.

    Fields whose types cannot be resolved, or whose numbers are invalid, are
    left out of the descriptor and recorded in `unresolved` keyed by the
    message's full protobuf name.
    """

    def __init__(self, catalog):
        super().__init__()
        self.catalog = catalog
        self.package = catalog.package
        self.syntax = catalog.syntax if catalog.syntax in ("proto2", "proto3") else "proto3"
        self.unresolved: Dict[str, Dict[str, str]] = {}
        self.dependencies: "OrderedDict[str, descriptor_pb2.FileDescriptorProto]" = OrderedDict()
        self._messages: Dict[str, descriptor_pb2.DescriptorProto] = {}
        self._enums: Dict[str, descriptor_pb2.EnumDescriptorProto] = {}

    def full_name(self, local_name: str) -> str:
        return f"{self.package}.{local_name}" if self.package else local_name

    def build_file(self) -> descriptor_pb2.FileDescriptorProto:
        fdp = descriptor_pb2.FileDescriptorProto()
        fdp.name = f"idl/{self.package.replace('.', '/') or 'schema'}.proto"
        fdp.syntax = self.syntax
        if self.package:
            fdp.package = self.package

        # Parents before nested types
        for name in sorted(self.catalog.messages, key=lambda n: n.count(".")):
            parent_name, _, short = name.rpartition(".")
            if not parent_name:
                self._messages[name] = fdp.message_type.add(name=short)
            elif parent_name in self._messages:
                self._messages[name] = self._messages[parent_name].nested_type.add(name=short)
            else:
                self.logger.warning(f"Message '{name}' is nested in an undefined message, skipping")

        for name, enum in self.catalog.enums.items():
            parent_name, _, short = name.rpartition(".")
            if parent_name and parent_name not in self._messages:
                self.logger.warning(f"Enum '{name}' is nested in an undefined message, skipping")
                continue
            if not enum.values or (self.syntax == "proto3" and enum.values[0][1] != 0):
                self.logger.warning(f"Enum '{name}' has no zero first value, skipping")
                continue
            container = self._messages[parent_name].enum_type if parent_name else fdp.enum_type
            enum_proto = container.add(name=short)
            for value_name, number in enum.values:
                enum_proto.value.add(name=value_name, number=number)
            self._enums[name] = enum_proto

        for name, message in self.catalog.messages.items():
            if name in self._messages:
                self._add_fields(name, message)

        # Method types may be well-known types that no field mentions
        for service in self.catalog.services.values():
            for method in service.methods:
                self._resolve_type(method.input_type, "")
                self._resolve_type(method.output_type, "")

        fdp.dependency.extend(self.dependencies)
        return fdp

    def build_pool(self) -> Tuple[descriptor_pool.DescriptorPool, Dict[str, Dict[str, str]]]:
        fdp = self.build_file()
        pool = descriptor_pool.DescriptorPool()
        try:
            for dependency in self.dependencies.values():
                pool.AddSerializedFile(dependency.SerializeToString())
            pool.AddSerializedFile(fdp.SerializeToString())
        except (TypeError, ValueError, KeyError) as e:
            self.log(function_name='build_pool', args=[fdp.name], exception=e)
            raise DescriptorError(f"Could not build descriptors from the parsed schema: {e}") from e
        return pool, self.unresolved

    def _skip_field(self, message_name: str, field_name: str, reason: str):
        self.logger.warning(f"Field '{message_name}.{field_name}' left out: {reason}")
        self.unresolved.setdefault(self.full_name(message_name), {})[field_name] = reason

    def _add_fields(self, message_name: str, message):
        proto = self._messages[message_name]
        seen_numbers = set()
        seen_names = set(nested.name for nested in proto.nested_type)

        for field in message.fields:
            number = field.number
            if number < 1 or number > MAX_FIELD_NUMBER or number in RESERVED_FIELD_NUMBERS:
                self._skip_field(message_name, field.name, f"invalid field number {number}")
                continue
            if number in seen_numbers:
                self._skip_field(message_name, field.name, f"duplicate field number {number}")
                continue
            if field.name in seen_names:
                self._skip_field(message_name, field.name, "duplicate field name")
                continue

            map_match = _MAP_TYPE.match(field.field_type)
            if map_match:
                entry = self._map_entry(message_name, field.name, *map_match.groups())
                if entry is None:
                    continue
                resolved = (FieldProto.TYPE_MESSAGE, entry)
                label = FieldProto.LABEL_REPEATED
            else:
                resolved = self._field_type(field.field_type, message_name)
                if resolved is None:
                    self._skip_field(message_name, field.name, f"type '{field.field_type}' is not defined")
                    continue
                label = FieldProto.LABEL_REPEATED if field.repeated else FieldProto.LABEL_OPTIONAL

            field_type, type_name = resolved
            field_proto = proto.field.add(
                name=field.name,
                number=number,
                label=label,
                type=field_type,
                json_name=json_name(field.name),
            )
            if type_name:
                field_proto.type_name = type_name
            seen_numbers.add(number)
            seen_names.add(field.name)

    def _map_entry(self, message_name: str, field_name: str, key_type: str, value_type: str) -> Optional[str]:
        if key_type not in MAP_KEY_TYPES:
            self._skip_field(message_name, field_name, f"'{key_type}' cannot be a map key")
            return None
        value = self._field_type(value_type, message_name)
        if value is None:
            self._skip_field(message_name, field_name, f"type '{value_type}' is not defined")
            return None

        proto = self._messages[message_name]
        entry_name = map_entry_name(field_name)
        if any(nested.name == entry_name for nested in proto.nested_type):
            self._skip_field(message_name, field_name, f"'{entry_name}' clashes with a nested type")
            return None

        entry = proto.nested_type.add(name=entry_name)
        entry.options.map_entry = True
        entry.field.add(name="key", number=1, label=FieldProto.LABEL_OPTIONAL,
                        type=SCALAR_WIRE_TYPES[key_type], json_name="key")
        value_field = entry.field.add(name="value", number=2, label=FieldProto.LABEL_OPTIONAL,
                                      type=value[0], json_name="value")
        if value[1]:
            value_field.type_name = value[1]
        return f".{self.full_name(message_name)}.{entry_name}"

    def _field_type(self, type_name: str, scope: str) -> Optional[Tuple[int, str]]:
        if type_name in SCALAR_WIRE_TYPES:
            return SCALAR_WIRE_TYPES[type_name], ""
        return self._resolve_type(type_name, scope)

    def _resolve_type(self, type_name: str, scope: str) -> Optional[Tuple[int, str]]:
        """Resolve a type reference the way protoc does, innermost scope first."""
        if type_name.startswith("."):
            candidates = [type_name[1:]]
        else:
            parts = scope.split(".") if scope else []
            candidates = [".".join(parts[:i] + [type_name]) for i in range(len(parts), -1, -1)]

        for candidate in candidates:
            local = candidate
            if self.package and candidate.startswith(self.package + "."):
                local = candidate[len(self.package) + 1:]
            if local in self._messages:
                return FieldProto.TYPE_MESSAGE, f".{self.full_name(local)}"
            if local in self._enums:
                return FieldProto.TYPE_ENUM, f".{self.full_name(local)}"

        return self._well_known_type(type_name.lstrip("."))

    def _well_known_type(self, full_name: str) -> Optional[Tuple[int, str]]:
        if not full_name.startswith("google.protobuf."):
            return None
        default_pool = descriptor_pool.Default()
        for finder, field_type in ((default_pool.FindMessageTypeByName, FieldProto.TYPE_MESSAGE),
                                   (default_pool.FindEnumTypeByName, FieldProto.TYPE_ENUM)):
            try:
                found = finder(full_name)
            except KeyError:
                continue
            self._add_dependency(found.file)
            return field_type, f".{full_name}"
        return None

    def _add_dependency(self, file_descriptor):
        if file_descriptor.name in self.dependencies:
            return
        for dependency in file_descriptor.dependencies:
            self._add_dependency(dependency)
        file_proto = descriptor_pb2.FileDescriptorProto()
        file_descriptor.CopyToProto(file_proto)
        self.dependencies[file_descriptor.name] = file_proto
