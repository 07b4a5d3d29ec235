import base64
import binascii
import json
import math
from typing import Any, Dict, Optional

from google.protobuf import json_format, wrappers_pb2
from google.protobuf.descriptor import FieldDescriptor
from google.protobuf.internal import type_checkers
from google.protobuf.message import DecodeError, Message

from invoker.catalog import MessageDescriptor
from invoker.errors import ConversionError, DescriptorError
from invoker.helper import helper

helpercls = helper()

INT_RANGES = {
    FieldDescriptor.TYPE_INT32: (-2 ** 31, 2 ** 31 - 1),
    FieldDescriptor.TYPE_SINT32: (-2 ** 31, 2 ** 31 - 1),
    FieldDescriptor.TYPE_SFIXED32: (-2 ** 31, 2 ** 31 - 1),
    FieldDescriptor.TYPE_UINT32: (0, 2 ** 32 - 1),
    FieldDescriptor.TYPE_FIXED32: (0, 2 ** 32 - 1),
    FieldDescriptor.TYPE_INT64: (-2 ** 63, 2 ** 63 - 1),
    FieldDescriptor.TYPE_SINT64: (-2 ** 63, 2 ** 63 - 1),
    FieldDescriptor.TYPE_SFIXED64: (-2 ** 63, 2 ** 63 - 1),
    FieldDescriptor.TYPE_UINT64: (0, 2 ** 64 - 1),
    FieldDescriptor.TYPE_FIXED64: (0, 2 ** 64 - 1),
}

FLOAT_MAX = 3.4028234663852886e38

TYPE_NAMES = {
    FieldDescriptor.TYPE_DOUBLE: "double",
    FieldDescriptor.TYPE_FLOAT: "float",
    FieldDescriptor.TYPE_INT64: "int64",
    FieldDescriptor.TYPE_UINT64: "uint64",
    FieldDescriptor.TYPE_INT32: "int32",
    FieldDescriptor.TYPE_FIXED64: "fixed64",
    FieldDescriptor.TYPE_FIXED32: "fixed32",
    FieldDescriptor.TYPE_BOOL: "bool",
    FieldDescriptor.TYPE_STRING: "string",
    FieldDescriptor.TYPE_BYTES: "bytes",
    FieldDescriptor.TYPE_UINT32: "uint32",
    FieldDescriptor.TYPE_ENUM: "enum",
    FieldDescriptor.TYPE_SFIXED32: "sfixed32",
    FieldDescriptor.TYPE_SFIXED64: "sfixed64",
    FieldDescriptor.TYPE_SINT32: "sint32",
    FieldDescriptor.TYPE_SINT64: "sint64",
}


class ProtobufConverter:
    """JSON documents <-> protobuf messages, driven only by runtime descriptors."""

    WRAPPER_TYPES = {
        'google.protobuf.BoolValue': wrappers_pb2.BoolValue,
        'google.protobuf.Int32Value': wrappers_pb2.Int32Value,
        'google.protobuf.Int64Value': wrappers_pb2.Int64Value,
        'google.protobuf.UInt32Value': wrappers_pb2.UInt32Value,
        'google.protobuf.UInt64Value': wrappers_pb2.UInt64Value,
        'google.protobuf.FloatValue': wrappers_pb2.FloatValue,
        'google.protobuf.DoubleValue': wrappers_pb2.DoubleValue,
        'google.protobuf.StringValue': wrappers_pb2.StringValue,
        'google.protobuf.BytesValue': wrappers_pb2.BytesValue,
    }

    # Types whose JSON form is not a plain object of their fields
    JSON_FORMAT_TYPES = (
        'google.protobuf.Timestamp',
        'google.protobuf.Duration',
        'google.protobuf.Struct',
        'google.protobuf.Value',
        'google.protobuf.ListValue',
        'google.protobuf.FieldMask',
        'google.protobuf.Any',
    )

    WELL_KNOWN_TYPE_TEMPLATES = {
        "google.protobuf.Timestamp": "1970-01-01T00:00:00Z",
        "google.protobuf.Duration": "0s",
        "google.protobuf.FieldMask": "",
        "google.protobuf.Struct": {},
        "google.protobuf.Value": None,
        "google.protobuf.ListValue": [],
        "google.protobuf.Any": {"@type": ""},
        "google.protobuf.Empty": {},
        "google.protobuf.BoolValue": False,
        "google.protobuf.StringValue": "",
        "google.protobuf.BytesValue": "",
        "google.protobuf.Int32Value": 0,
        "google.protobuf.Int64Value": 0,
        "google.protobuf.UInt32Value": 0,
        "google.protobuf.UInt64Value": 0,
        "google.protobuf.FloatValue": 0.0,
        "google.protobuf.DoubleValue": 0.0,
    }

    def __init__(self, catalog=None):
        self.catalog = catalog

    def message_class(self, message_descriptor):
        """Accepts a message class, a MessageDescriptor or a type name."""
        if isinstance(message_descriptor, type) and issubclass(message_descriptor, Message):
            return message_descriptor
        name = message_descriptor.full_name if isinstance(message_descriptor, MessageDescriptor) else message_descriptor
        if self.catalog is None:
            raise DescriptorError(f"No schema available to resolve message type '{name}'")
        return self.catalog.message_class(name)

    def json_to_message(self, data: Any, message_descriptor, strict: bool = False) -> Message:
        message_class = self.message_class(message_descriptor)
        if isinstance(data, (str, bytes)):
            try:
                data = json.loads(data) if data else {}
            except json.JSONDecodeError as e:
                raise ConversionError("$", "a JSON document", data, reason=str(e)) from e
        message = message_class()
        if data is None:
            return message
        full_name = message.DESCRIPTOR.full_name
        if full_name in self.WRAPPER_TYPES or full_name in self.JSON_FORMAT_TYPES:
            self._fill_message(data, message, "$", strict)
            return message
        if not isinstance(data, dict):
            raise ConversionError("$", f"object ({full_name})", data)
        self.to_protobuf(data, message, strict=strict)
        return message

    def encode(self, data: Any, message_descriptor, strict: bool = False) -> bytes:
        return self.json_to_message(data, message_descriptor, strict=strict).SerializeToString()

    def decode(self, raw: bytes, message_descriptor) -> Any:
        message_class = self.message_class(message_descriptor)
        try:
            message = message_class.FromString(raw)
        except DecodeError as e:
            raise ConversionError("$", message_class.DESCRIPTOR.full_name, reason=f"undecodable payload: {e}") from e
        return self.message_to_json(message)

    def to_protobuf(self, input_data: Dict[str, Any], msg: Message, strict: bool = False, path: str = "") -> Message:
        """Populate `msg` from a JSON object, field by field."""
        descriptor = msg.DESCRIPTOR
        for input_name, value in input_data.items():
            field_path = f"{path}.{input_name}" if path else input_name
            field = descriptor.fields_by_name.get(input_name) or descriptor.fields_by_camelcase_name.get(input_name)

            if field is None:
                unresolved = self.catalog.unresolved_fields(descriptor.full_name) if self.catalog is not None else {}
                if input_name in unresolved:
                    raise DescriptorError(f"Field '{field_path}' cannot be encoded: {unresolved[input_name]}")
                if strict:
                    raise ConversionError(field_path, f"a field of {descriptor.full_name}", value, reason="unknown field")
                helpercls.logger.warning(f"Unknown field '{field_path}' for {descriptor.full_name}, skipping")
                continue

            if value is None:
                continue

            if field.containing_oneof is not None:
                current = msg.WhichOneof(field.containing_oneof.name)
                if current and current != field.name:
                    helpercls.logger.warning(f"Overwriting oneof field '{current}' with '{field.name}'")

            self._set_field(msg, field, value, field_path, strict)
        return msg

    def _set_field(self, msg: Message, field: FieldDescriptor, value: Any, path: str, strict: bool):
        if self._is_map(field):
            if not isinstance(value, dict):
                raise ConversionError(path, "object", value)
            container = getattr(msg, field.name)
            key_field = field.message_type.fields_by_name["key"]
            value_field = field.message_type.fields_by_name["value"]
            for key, item in value.items():
                item_path = f"{path}[{key}]"
                map_key = self._convert_map_key(key, key_field, item_path)
                if value_field.message_type is not None:
                    self._merge_message(item, container[map_key], item_path, strict)
                elif item is None:
                    container[map_key] = value_field.default_value
                else:
                    container[map_key] = self._convert_single_value(item, value_field, item_path)
            return

        if field.is_repeated:
            if not isinstance(value, list):
                raise ConversionError(path, "array", value)
            container = getattr(msg, field.name)
            for index, item in enumerate(value):
                item_path = f"{path}[{index}]"
                if item is None:
                    raise ConversionError(item_path, self._expected(field), item, reason="null is not allowed in a list")
                if field.message_type is not None:
                    self._merge_message(item, container.add(), item_path, strict)
                else:
                    container.append(self._convert_single_value(item, field, item_path))
            return

        if field.message_type is not None:
            self._merge_message(value, getattr(msg, field.name), path, strict)
        else:
            setattr(msg, field.name, self._convert_single_value(value, field, path))

    def _merge_message(self, value: Any, sub: Message, path: str, strict: bool = False):
        sub.SetInParent()
        self._fill_message(value, sub, path, strict)

    def _fill_message(self, value: Any, sub: Message, path: str, strict: bool = False):
        full_name = sub.DESCRIPTOR.full_name
        if full_name in self.WRAPPER_TYPES:
            if isinstance(value, dict):
                value = value.get("value")
            if value is not None:
                sub.value = self._convert_single_value(value, sub.DESCRIPTOR.fields_by_name["value"], path)
            return

        seconds_nanos = full_name in ('google.protobuf.Timestamp', 'google.protobuf.Duration') and isinstance(value, dict)
        if full_name in self.JSON_FORMAT_TYPES and not seconds_nanos:
            pool = self.catalog.descriptor_pool if self.catalog is not None else None
            try:
                json_format.ParseDict(value, sub, descriptor_pool=pool)
            except json_format.ParseError as e:
                raise ConversionError(path, full_name, value, reason=str(e)) from e
            return

        if value is None:
            return
        if not isinstance(value, dict):
            raise ConversionError(path, f"object ({full_name})", value)
        self.to_protobuf(value, sub, strict=strict, path=path)

    def _convert_map_key(self, key: Any, field: FieldDescriptor, path: str):
        if field.type == FieldDescriptor.TYPE_BOOL and isinstance(key, str):
            if key not in ("true", "false"):
                raise ConversionError(path, "bool map key", key)
            return key == "true"
        return self._convert_single_value(key, field, path)

    def _convert_single_value(self, value: Any, field: FieldDescriptor, path: str) -> Any:
        """Convert one JSON value to the Python type protobuf expects for `field`."""
        field_type = field.type
        expected = self._expected(field)

        if field_type == FieldDescriptor.TYPE_ENUM:
            enum_type = field.enum_type
            if isinstance(value, str):
                enum_value = enum_type.values_by_name.get(value)
                if enum_value is None:
                    allowed = ", ".join(v.name for v in enum_type.values)
                    raise ConversionError(path, expected, value, reason=f"allowed values: {allowed}")
                return enum_value.number
            if isinstance(value, int) and not isinstance(value, bool):
                if value not in enum_type.values_by_number:
                    raise ConversionError(path, expected, value, reason="unknown enum number")
                return value
            raise ConversionError(path, expected, value)

        if field_type == FieldDescriptor.TYPE_BOOL:
            if isinstance(value, bool):
                return value
            raise ConversionError(path, expected, value)

        if field_type in INT_RANGES:
            number = self._to_int(value)
            if number is None:
                raise ConversionError(path, expected, value)
            low, high = INT_RANGES[field_type]
            if not low <= number <= high:
                raise ConversionError(path, expected, value, reason="out of range")
            return number

        if field_type in (FieldDescriptor.TYPE_FLOAT, FieldDescriptor.TYPE_DOUBLE):
            number = self._to_float(value)
            if number is None:
                raise ConversionError(path, expected, value)
            if field_type == FieldDescriptor.TYPE_FLOAT and math.isfinite(number) and abs(number) > FLOAT_MAX:
                raise ConversionError(path, expected, value, reason="out of range")
            return number

        if field_type == FieldDescriptor.TYPE_STRING:
            if isinstance(value, str):
                return value
            raise ConversionError(path, expected, value)

        if field_type == FieldDescriptor.TYPE_BYTES:
            if isinstance(value, (bytes, bytearray)):
                return bytes(value)
            if not isinstance(value, str):
                raise ConversionError(path, expected, value)
            normalized = value.replace("-", "+").replace("_", "/")
            normalized += "=" * (-len(normalized) % 4)
            try:
                return base64.b64decode(normalized, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ConversionError(path, expected, value, reason="invalid base64") from e

        raise ConversionError(path, expected, value)

    @staticmethod
    def _to_int(value: Any) -> Optional[int]:
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            return int(value) if value.is_integer() else None
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                try:
                    parsed = float(value)
                except ValueError:
                    return None
                return int(parsed) if parsed.is_integer() else None
        return None

    @staticmethod
    def _to_float(value: Any) -> Optional[float]:
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            special = {"NaN": math.nan, "Infinity": math.inf, "-Infinity": -math.inf}
            if value in special:
                return special[value]
            try:
                return float(value)
            except ValueError:
                return None
        return None

    @staticmethod
    def _is_map(field: FieldDescriptor) -> bool:
        return (field.is_repeated
                and field.message_type is not None
                and field.message_type.GetOptions().map_entry)

    @staticmethod
    def _expected(field: FieldDescriptor) -> str:
        if field.type == FieldDescriptor.TYPE_ENUM:
            return f"enum {field.enum_type.full_name}"
        if field.message_type is not None:
            return field.message_type.full_name
        return TYPE_NAMES.get(field.type, "unknown")

    def message_to_json(self, message: Message) -> Any:
        """Structural inverse of json_to_message.

        Defaults are included, unset sub-messages come out as None and only the
        set member of a oneof is emitted.
        """
        full_name = message.DESCRIPTOR.full_name
        if full_name in self.WRAPPER_TYPES:
            return self._value_to_json(message.value, message.DESCRIPTOR.fields_by_name["value"])
        if full_name in self.JSON_FORMAT_TYPES:
            return self._well_known_to_json(message)
        return self.to_dict(message)

    def to_dict(self, msg: Message) -> Dict[str, Any]:
        result = {}
        for field in msg.DESCRIPTOR.fields:
            name = field.name
            oneof = field.containing_oneof
            if oneof is not None and msg.WhichOneof(oneof.name) != name:
                continue

            value = getattr(msg, name)
            if self._is_map(field):
                value_field = field.message_type.fields_by_name["value"]
                result[name] = {
                    self._map_key_to_json(k): self._value_to_json(v, value_field)
                    for k, v in value.items()
                }
            elif field.is_repeated:
                result[name] = [self._value_to_json(v, field) for v in value]
            elif field.message_type is not None:
                result[name] = self._value_to_json(value, field) if msg.HasField(name) else None
            else:
                result[name] = self._value_to_json(value, field)
        return result

    def _value_to_json(self, value: Any, field: FieldDescriptor) -> Any:
        if field.message_type is not None:
            return self.message_to_json(value)
        if field.type == FieldDescriptor.TYPE_ENUM:
            enum_value = field.enum_type.values_by_number.get(value)
            return enum_value.name if enum_value is not None else value
        if field.type == FieldDescriptor.TYPE_BYTES:
            return base64.b64encode(value).decode("ascii")
        if isinstance(value, float):
            if math.isnan(value):
                return "NaN"
            if math.isinf(value):
                return "Infinity" if value > 0 else "-Infinity"
            if field.type == FieldDescriptor.TYPE_FLOAT:
                # shortest repr that narrows back to the same float32
                return type_checkers.ToShortestFloat(value)
        return value

    @staticmethod
    def _map_key_to_json(key: Any) -> str:
        if isinstance(key, bool):
            return "true" if key else "false"
        return str(key)

    def _well_known_to_json(self, message: Message) -> Any:
        pool = self.catalog.descriptor_pool if self.catalog is not None else None
        try:
            return json_format.MessageToDict(message, preserving_proto_field_name=True, descriptor_pool=pool)
        except (TypeError, KeyError) as e:
            # Any payload whose type is not in the pool
            helpercls.log('_well_known_to_json', [message.DESCRIPTOR.full_name], exception=e)
            return {
                "@type": getattr(message, "type_url", ""),
                "value": base64.b64encode(getattr(message, "value", b"")).decode("ascii"),
            }

    def build_template(self, message_descriptor) -> Any:
        """Default-valued JSON skeleton for a message, used to pre-fill requests."""
        message_class = self.message_class(message_descriptor)
        return self._template(message_class.DESCRIPTOR, set())

    def _template(self, descriptor, in_progress: set) -> Any:
        if descriptor.full_name in self.WELL_KNOWN_TYPE_TEMPLATES:
            return self.WELL_KNOWN_TYPE_TEMPLATES[descriptor.full_name]
        if descriptor.full_name in in_progress:
            return {}

        in_progress = in_progress | {descriptor.full_name}
        template = {}
        chosen_oneofs = set()
        for field in descriptor.fields:
            oneof = field.containing_oneof
            if oneof is not None:
                if oneof.name in chosen_oneofs:
                    continue
                chosen_oneofs.add(oneof.name)

            if self._is_map(field):
                key_field = field.message_type.fields_by_name["key"]
                value_field = field.message_type.fields_by_name["value"]
                key = self._map_key_to_json(self._default_for_field(key_field, in_progress))
                template[field.name] = {key: self._default_for_field(value_field, in_progress)}
            elif field.is_repeated:
                template[field.name] = [self._default_for_field(field, in_progress)]
            else:
                template[field.name] = self._default_for_field(field, in_progress)
        return template

    def _default_for_field(self, field: FieldDescriptor, in_progress: set) -> Any:
        if field.message_type is not None:
            return self._template(field.message_type, in_progress)
        if field.type == FieldDescriptor.TYPE_ENUM:
            values = field.enum_type.values
            return values[0].name if values else 0
        if field.type == FieldDescriptor.TYPE_STRING:
            return ""
        if field.type == FieldDescriptor.TYPE_BYTES:
            return ""
        if field.type == FieldDescriptor.TYPE_BOOL:
            return False
        if field.type in (FieldDescriptor.TYPE_FLOAT, FieldDescriptor.TYPE_DOUBLE):
            return 0.0
        return 0
