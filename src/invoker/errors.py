from typing import Any, Iterable, Optional


class InvokerError(Exception):
    """Base class for errors raised while resolving, encoding or calling a method."""


class GrpcConnectionError(InvokerError):
    """The transport to the target could not be established."""


class DescriptorError(InvokerError):
    """A descriptor payload was malformed or a type reference could not be resolved."""


class NotFoundError(InvokerError):
    """A service or method name did not resolve.

    The message always lists the names that do exist so the caller can correct
    the request.
    """

    def __init__(self, kind: str, name: str, available: Iterable[str], scope: Optional[str] = None):
        self.kind = kind
        self.name = name
        self.available = list(available)
        self.scope = scope
        where = f" in service '{scope}'" if scope else ""
        msg = f"{kind.capitalize()} '{name}' not found{where}. Available {kind}s: [{', '.join(self.available)}]"
        super().__init__(msg)


class ConversionError(InvokerError):
    """A JSON value could not be coerced to the declared field type."""

    def __init__(self, field: str, expected: str, value: Any = None, reason: Optional[str] = None):
        self.field = field
        self.expected = expected
        self.value = value
        msg = f"Cannot convert value {value!r} for field '{field}': expected {expected}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class TransportStatusError(InvokerError):
    """The remote call completed with a non-OK status."""

    def __init__(self, code: int, code_name: str, details: Optional[str] = None):
        self.code = code
        self.code_name = code_name
        self.details = details or ""
        super().__init__(f"gRPC error {code_name} ({code}): {self.details}")

    @classmethod
    def from_rpc_error(cls, error) -> "TransportStatusError":
        status = error.code()
        code_value = status.value[0] if status is not None else 2
        code_name = status.name if status is not None else "UNKNOWN"
        details = error.details() if callable(getattr(error, "details", None)) else None
        return cls(code_value, code_name, details)
