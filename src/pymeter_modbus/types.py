"""Core data model: device address, register descriptors, readings and policies."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from .errors import ErrorKind, ModbusError


class RegisterBank(str, Enum):
    """Modbus register banks readable by this package."""

    HOLDING = "holding"
    INPUT = "input"


class WordOrder(str, Enum):
    """Order of 16-bit words inside a 32-bit value."""

    HIGH_FIRST = "high_first"
    LOW_FIRST = "low_first"


class DataType(str, Enum):
    """Numeric interpretation of one or two register words."""

    UINT16 = "uint16"
    INT16 = "int16"
    UINT32 = "uint32"
    INT32 = "int32"
    FLOAT32 = "float32"

    @property
    def register_count(self) -> int:
        return 1 if self in (DataType.UINT16, DataType.INT16) else 2


class ReadStatus(str, Enum):
    OK = "ok"
    ERROR = "error"


class SessionState(str, Enum):
    """Transport session lifecycle: DISCONNECTED -> CONNECTING -> READY <-> IN_FLIGHT -> CLOSED."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    IN_FLIGHT = "in_flight"
    CLOSED = "closed"


@dataclass(frozen=True)
class DeviceAddress:
    """Identity of one Modbus device behind ip:port; used as the pool key."""

    ip: str
    port: int = 502
    unit_id: int = 1

    def __post_init__(self) -> None:
        if not self.ip or not self.ip.strip():
            raise ValueError("ip must not be empty")
        if not 1 <= self.port <= 65535:
            raise ValueError(f"port must be 1-65535, got {self.port}")
        if not 0 <= self.unit_id <= 247:
            raise ValueError(f"unit_id must be 0-247, got {self.unit_id}")

    def __str__(self) -> str:
        return f"{self.ip}:{self.port}/{self.unit_id}"

    def to_dict(self) -> dict[str, Any]:
        return {"ip": self.ip, "port": self.port, "unit_id": self.unit_id}


@dataclass(frozen=True)
class RegisterDescriptor:
    """
    Static description of one named quantity: where it lives and how to scale it.

    `scale` is a divisor: scaled value = raw / scale. `data_type` defaults to the
    unsigned type matching `count`.
    """

    name: str
    address: int
    count: int = 1
    scale: float = 1
    bank: RegisterBank = RegisterBank.HOLDING
    word_order: WordOrder = WordOrder.HIGH_FIRST
    data_type: DataType | None = None
    unit: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("name must not be empty")
        if not 0 <= self.address <= 65535:
            raise ValueError(f"address must be 0-65535, got {self.address}")
        if self.count not in (1, 2):
            raise ValueError(f"count must be 1 or 2, got {self.count}")
        if self.address + self.count - 1 > 65535:
            raise ValueError(f"register {self.name!r} runs past address 65535")
        if self.scale == 0:
            raise ValueError(f"scale must be non-zero for {self.name!r}")
        object.__setattr__(self, "bank", RegisterBank(self.bank))
        object.__setattr__(self, "word_order", WordOrder(self.word_order))
        if self.data_type is None:
            default = DataType.UINT16 if self.count == 1 else DataType.UINT32
            object.__setattr__(self, "data_type", default)
        else:
            object.__setattr__(self, "data_type", DataType(self.data_type))
        if self.data_type.register_count != self.count:
            raise ValueError(
                f"data_type {self.data_type.value} needs {self.data_type.register_count} "
                f"register(s), {self.name!r} declares {self.count}"
            )

    @property
    def end(self) -> int:
        """Address one past the last register of this descriptor."""
        return self.address + self.count


@dataclass(frozen=True)
class RegisterValue:
    """Result for one requested register: either ok with values, or error with a cause."""

    status: ReadStatus
    scaled_value: float | None = None
    raw: int | float | None = None
    error: ModbusError | None = None

    def __post_init__(self) -> None:
        if (self.status == ReadStatus.ERROR) != (self.error is not None):
            raise ValueError("RegisterValue carries an error exactly when its status is error")

    @classmethod
    def ok(cls, raw: int | float, scaled_value: float) -> "RegisterValue":
        return cls(status=ReadStatus.OK, scaled_value=scaled_value, raw=raw)

    @classmethod
    def failed(cls, error: ModbusError) -> "RegisterValue":
        return cls(status=ReadStatus.ERROR, error=error)

    @property
    def is_ok(self) -> bool:
        return self.status == ReadStatus.OK

    def to_dict(self) -> dict[str, Any]:
        if self.error is None:
            return {"scaled_value": self.scaled_value, "raw": self.raw, "status": self.status.value}
        return {
            "status": self.status.value,
            "error": {"kind": self.error.kind.value, "message": self.error.message},
        }


@dataclass(frozen=True)
class MeterReading:
    """One read cycle's result. Every requested register appears in `values`."""

    address: DeviceAddress
    timestamp: datetime
    values: Mapping[str, RegisterValue]
    error: ModbusError | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    @property
    def overall_success(self) -> bool:
        return all(v.is_ok for v in self.values.values())

    def scaled(self) -> dict[str, float]:
        """Scaled values of the registers that succeeded."""
        return {name: v.scaled_value for name, v in self.values.items() if v.is_ok}  # type: ignore[misc]

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "address": self.address.to_dict(),
            "timestamp": self.timestamp.isoformat(),
            "values": {name: v.to_dict() for name, v in self.values.items()},
            "overall_success": self.overall_success,
        }
        if self.error is not None:
            out["error"] = self.error.to_dict()
        return out


@dataclass(frozen=True)
class ReadPolicy:
    """Per-stage time budgets for one read, in seconds."""

    connect_timeout: float = 3.0
    read_timeout: float = 3.0
    acquire_timeout: float = 5.0

    def __post_init__(self) -> None:
        for name in ("connect_timeout", "read_timeout", "acquire_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")


@dataclass(frozen=True)
class PoolConfig:
    """Connection pool limits; times are in seconds."""

    per_key_max: int = 2
    idle_timeout: float = 30.0
    eviction_interval: float = 30.0
    connect_timeout: float = 3.0
    acquire_timeout: float = 5.0
    # idle sessions read one holding register every interval
    health_check_interval: float = 30.0
    health_check_timeout: float = 1.0
    health_check_register: int = 0

    def __post_init__(self) -> None:
        if self.per_key_max < 1:
            raise ValueError(f"per_key_max must be >= 1, got {self.per_key_max}")
        if self.idle_timeout <= 0 or self.eviction_interval <= 0:
            raise ValueError("idle_timeout and eviction_interval must be positive")
        if self.health_check_interval <= 0 or self.health_check_timeout <= 0:
            raise ValueError("health_check_interval and health_check_timeout must be positive")
        if not 0 <= self.health_check_register <= 0xFFFF:
            raise ValueError(f"health_check_register must be 0-65535, got {self.health_check_register}")


__all__ = [
    "DataType",
    "DeviceAddress",
    "ErrorKind",
    "MeterReading",
    "PoolConfig",
    "ReadPolicy",
    "ReadStatus",
    "RegisterBank",
    "RegisterDescriptor",
    "RegisterValue",
    "SessionState",
    "WordOrder",
]
