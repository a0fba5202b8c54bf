"""Exceptions for pymeter-modbus: unknown registers and typed Modbus failures."""

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .types import DeviceAddress


class ErrorKind(str, Enum):
    """Closed set of failure kinds surfaced to callers."""

    CONNECTION_REFUSED = "connection_refused"
    TIMEOUT = "timeout"
    PROTOCOL_ERROR = "protocol_error"
    PARTIAL_READ = "partial_read"
    INVALID_RESPONSE = "invalid_response"
    POOL_EXHAUSTED = "pool_exhausted"


class PyMeterModbusError(Exception):
    """Base exception for pymeter-modbus."""

    pass


class UnknownRegisterError(PyMeterModbusError):
    """Raised when a register name is not in the current register map."""

    def __init__(self, name: str, message: str | None = None) -> None:
        self.name = name
        self._msg = message or f"Unknown register: {name!r}"
        super().__init__(self._msg)


class ModbusError(PyMeterModbusError):
    """
    A typed Modbus failure: connect, timeout, protocol, pool or partial read.

    `per_register_cause` is only set for PARTIAL_READ and maps register names
    to the error that register failed with.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        address: "DeviceAddress | None" = None,
        per_register_cause: dict[str, "ModbusError"] | None = None,
        cause: BaseException | None = None,
        exception_code: int | None = None,
    ) -> None:
        self.kind = ErrorKind(kind)
        self.message = message
        self.address = address
        self.per_register_cause = per_register_cause
        self.cause = cause
        self.exception_code = exception_code
        super().__init__(message)

    def __str__(self) -> str:
        if self.address is None:
            return f"[{self.kind.value}] {self.message}"
        return f"[{self.kind.value}] {self.address}: {self.message}"

    def __repr__(self) -> str:
        return f"ModbusError(kind={self.kind.value!r}, message={self.message!r}, address={self.address!r})"

    @property
    def is_timeout(self) -> bool:
        """True for failures caused by an exceeded time budget (pool waits included)."""
        return self.kind in (ErrorKind.TIMEOUT, ErrorKind.POOL_EXHAUSTED)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.address is not None:
            out["address"] = self.address.to_dict()
        if self.exception_code is not None:
            out["exception_code"] = self.exception_code
        if self.per_register_cause:
            out["per_register_cause"] = {
                name: {"kind": err.kind.value, "message": err.message}
                for name, err in self.per_register_cause.items()
            }
        return out
