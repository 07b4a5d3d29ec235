from dataclasses import asdict, dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


class CallType(Enum):
    UNARY = "unary"
    SERVER_STREAMING = "server_streaming"
    CLIENT_STREAMING = "client_streaming"
    BIDIRECTIONAL = "bidirectional"

    @classmethod
    def from_flags(cls, is_client_streaming: bool, is_server_streaming: bool) -> "CallType":
        if is_client_streaming and is_server_streaming:
            return cls.BIDIRECTIONAL
        if is_client_streaming:
            return cls.CLIENT_STREAMING
        if is_server_streaming:
            return cls.SERVER_STREAMING
        return cls.UNARY


class CallState(Enum):
    RESOLVING = "resolving"
    ENCODING = "encoding"
    IN_FLIGHT = "in_flight"
    DECODING = "decoding"
    DONE = "done"


@dataclass(frozen=True)
class CallRequest:
    target: str
    service: str
    method: str
    message: Any = None
    metadata: Mapping[str, str] = field(default_factory=dict)
    call_type: CallType = CallType.UNARY
    auth: Optional[Dict[str, Any]] = None
    timeout: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata or {})))


@dataclass(frozen=True)
class CallResponse:
    success: bool
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    status_message: Optional[str] = None

    @classmethod
    def ok(cls, data: Any, status_message: str = "OK") -> "CallResponse":
        return cls(success=True, data=data, status_code=0, status_message=status_message)

    @classmethod
    def failure(cls, error: str, status_code: Optional[int] = None, status_message: Optional[str] = None) -> "CallResponse":
        return cls(success=False, error=error, status_code=status_code, status_message=status_message)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
