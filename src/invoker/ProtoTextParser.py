import re
from typing import List, Optional

from invoker.catalog import (
    EnumDescriptor,
    FieldDescriptor,
    MessageDescriptor,
    MethodDescriptor,
    SchemaCatalog,
    ServiceDescriptor,
)
from invoker.helper import helper


_RPC_PATTERN = re.compile(
    r"^rpc\s+(?P<name>\w+)\s*\(\s*(?P<client_stream>stream\s+)?(?P<input>[\w.]+)\s*\)"
    r"\s*returns\s*\(\s*(?P<server_stream>stream\s+)?(?P<output>[\w.]+)\s*\)"
)
_MAP_PATTERN = re.compile(r"^map\s*<\s*([\w.]+)\s*,\s*([\w.]+)\s*>\s*(\w+)")
_ENUM_VALUE_PATTERN = re.compile(r"^(\w+)\s*=\s*(-?\w+)")
_SYNTAX_PATTERN = re.compile(r'^syntax\s*=\s*["\'](\w+)["\']')
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)

_IGNORED_PREFIXES = ("option ", "option(", "reserved ", "extensions ", "import ", "edition ")


class _Scope:
    """One open `{` block."""

    def __init__(self, kind: str, name: str = "", slot: int = -1):
        self.kind = kind
        self.name = name
        self.slot = slot
        self.items: list = []


class ProtoTextParser(helper):
    """Best-effort parser for hand-written .proto text.

    The file is advisory, so nothing here raises: lines that cannot be
    understood are skipped.
    """

    def parse(self, text: Optional[str]) -> SchemaCatalog:
        services: List[Optional[ServiceDescriptor]] = []
        messages: List[Optional[MessageDescriptor]] = []
        enums: List[Optional[EnumDescriptor]] = []
        package = ""
        syntax = ""
        stack: List[_Scope] = []

        def enclosing_message() -> Optional[_Scope]:
            for scope in reversed(stack):
                if scope.kind == "message":
                    return scope
                if scope.kind != "oneof":
                    return None
            return None

        def qualify(name: str) -> str:
            parent = enclosing_message()
            return f"{parent.name}.{name}" if parent else name

        def flush(scope: _Scope):
            if scope.kind == "service":
                services[scope.slot] = ServiceDescriptor(scope.name, tuple(scope.items))
            elif scope.kind == "message":
                messages[scope.slot] = MessageDescriptor(scope.name, tuple(scope.items))
            elif scope.kind == "enum":
                enums[scope.slot] = EnumDescriptor(scope.name, tuple(scope.items))

        for line in self._logical_lines(text or ""):
            if line == "}":
                if stack:
                    flush(stack.pop())
                continue

            opens = line.endswith("{")
            keyword = line.split(None, 1)[0]
            name = self._block_name(line)
            top = stack[-1] if stack else None

            if keyword == "service" and opens and name:
                services.append(None)
                stack.append(_Scope("service", name, len(services) - 1))
            elif keyword == "message" and opens and name:
                messages.append(None)
                stack.append(_Scope("message", qualify(name), len(messages) - 1))
            elif keyword == "enum" and opens and name:
                enums.append(None)
                stack.append(_Scope("enum", qualify(name), len(enums) - 1))
            elif keyword == "oneof" and opens:
                stack.append(_Scope("oneof" if enclosing_message() else "ignored"))
            elif keyword == "rpc":
                if top is not None and top.kind == "service":
                    method = self._parse_rpc(line)
                    if method is not None:
                        top.items.append(method)
                    else:
                        self.logger.debug(f"Skipping unparseable rpc line: {line}")
                if opens:
                    stack.append(_Scope("ignored"))
            elif line.startswith(_IGNORED_PREFIXES):
                if opens:
                    stack.append(_Scope("ignored"))
            elif opens:
                stack.append(_Scope("ignored"))
            elif keyword == "package" and not stack:
                package = line[len("package"):].strip().rstrip(";").strip()
            elif keyword.startswith("syntax") and not stack:
                match = _SYNTAX_PATTERN.match(line)
                if match:
                    syntax = match.group(1)
            elif "=" in line and top is not None and top.kind == "enum":
                value = self._parse_enum_value(line)
                if value is not None:
                    top.items.append(value)
            elif "=" in line and top is not None and top.kind in ("message", "oneof"):
                field = self._parse_field(line)
                owner = enclosing_message()
                if field is not None and owner is not None:
                    owner.items.append(field)

        while stack:
            flush(stack.pop())

        return SchemaCatalog(
            services=[s for s in services if s is not None],
            messages=[m for m in messages if m is not None],
            enums=[e for e in enums if e is not None],
            package=package,
            syntax=syntax or "proto3",
            best_effort=True,
        )

    @staticmethod
    def _logical_lines(text: str) -> List[str]:
        """Split text so every `{`, `;` and `}` ends a line."""
        text = _BLOCK_COMMENT.sub("", text)
        lines = []
        for raw in text.splitlines():
            raw = raw.split("//", 1)[0]
            raw = re.sub(r"([{;])", "\\1\n", raw).replace("}", "\n}\n")
            lines.extend(part.strip() for part in raw.split("\n"))
        return [line for line in lines if line]

    @staticmethod
    def _block_name(line: str) -> str:
        parts = line.rstrip("{").split()
        if len(parts) < 2:
            return ""
        name = parts[1]
        return name if re.match(r"^[A-Za-z_]\w*$", name) else ""

    @staticmethod
    def _parse_rpc(line: str) -> Optional[MethodDescriptor]:
        """rpc Name(Input) returns (Output); with optional `stream` on either side."""
        match = _RPC_PATTERN.match(line)
        if not match:
            return None
        return MethodDescriptor(
            name=match.group("name"),
            input_type=match.group("input"),
            output_type=match.group("output"),
            is_client_streaming=match.group("client_stream") is not None,
            is_server_streaming=match.group("server_stream") is not None,
        )

    @staticmethod
    def _parse_field(line: str) -> Optional[FieldDescriptor]:
        head, _, tail = line.partition("=")
        head = head.strip()
        repeated = False
        if head.startswith("repeated "):
            repeated = True
            head = head[len("repeated "):].strip()
        elif head.startswith(("optional ", "required ")):
            head = head.split(None, 1)[1]

        number_token = tail.split(";", 1)[0].split("[", 1)[0].strip()
        try:
            number = int(number_token)
        except ValueError:
            number = 0

        map_match = _MAP_PATTERN.match(head)
        if map_match:
            key_type, value_type, name = map_match.groups()
            return FieldDescriptor(name, f"map<{key_type}, {value_type}>", number, True)

        tokens = head.split()
        if len(tokens) < 2:
            return None
        return FieldDescriptor(tokens[1], tokens[0], number, repeated)

    @staticmethod
    def _parse_enum_value(line: str):
        match = _ENUM_VALUE_PATTERN.match(line)
        if not match:
            return None
        try:
            return match.group(1), int(match.group(2), 0)
        except ValueError:
            return None
