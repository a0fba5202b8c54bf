"""pymeter-modbus: pooled Modbus TCP meter reads with per-register error reporting."""

__version__ = "0.1.0"

from .decode import decode_register, decode_words, encode_value
from .errors import ErrorKind, ModbusError, PyMeterModbusError, UnknownRegisterError
from .pool import ConnectionPool
from .reader import MeterReader
from .registermap import RegisterMap, get_default_register_map
from .session import TransportSession
from .types import (
    DataType,
    DeviceAddress,
    MeterReading,
    PoolConfig,
    ReadPolicy,
    ReadStatus,
    RegisterBank,
    RegisterDescriptor,
    RegisterValue,
    SessionState,
    WordOrder,
)

__all__ = [
    "__version__",
    "ConnectionPool",
    "MeterReader",
    "TransportSession",
    "ErrorKind",
    "ModbusError",
    "PyMeterModbusError",
    "UnknownRegisterError",
    "RegisterMap",
    "get_default_register_map",
    "decode_register",
    "decode_words",
    "encode_value",
    "DataType",
    "DeviceAddress",
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
