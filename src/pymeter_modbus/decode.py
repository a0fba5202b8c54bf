"""Combine register words into numbers and apply scale factors."""

from pymodbus.client import ModbusTcpClient
from pymodbus.exceptions import ModbusException as PymodbusException

from .errors import ErrorKind, ModbusError
from .types import DataType, RegisterDescriptor, WordOrder

_PYMODBUS_TYPES = {
    DataType.UINT16: ModbusTcpClient.DATATYPE.UINT16,
    DataType.INT16: ModbusTcpClient.DATATYPE.INT16,
    DataType.UINT32: ModbusTcpClient.DATATYPE.UINT32,
    DataType.INT32: ModbusTcpClient.DATATYPE.INT32,
    DataType.FLOAT32: ModbusTcpClient.DATATYPE.FLOAT32,
}

# pymodbus word_order: "big" = high word first
_PYMODBUS_WORD_ORDER = {
    WordOrder.HIGH_FIRST: "big",
    WordOrder.LOW_FIRST: "little",
}


def decode_words(
    words: list[int],
    data_type: DataType = DataType.UINT16,
    word_order: WordOrder = WordOrder.HIGH_FIRST,
) -> int | float:
    """
    Combine 16-bit register words into one value.

    Two-word types honour `word_order`; one-word types ignore it.
    Raises ModbusError(PROTOCOL_ERROR) when the word count does not fit the type.
    """
    data_type = DataType(data_type)
    if len(words) != data_type.register_count:
        raise ModbusError(
            ErrorKind.PROTOCOL_ERROR,
            f"{data_type.value} needs {data_type.register_count} word(s), got {len(words)}",
        )
    if any(not 0 <= w <= 0xFFFF for w in words):
        raise ModbusError(ErrorKind.PROTOCOL_ERROR, f"Register word out of range: {words}")
    try:
        value = ModbusTcpClient.convert_from_registers(
            list(words),
            _PYMODBUS_TYPES[data_type],
            word_order=_PYMODBUS_WORD_ORDER[WordOrder(word_order)],
        )
    except PymodbusException as e:
        raise ModbusError(ErrorKind.PROTOCOL_ERROR, str(e), cause=e) from e
    if data_type == DataType.FLOAT32:
        return float(value)  # type: ignore[arg-type]
    return int(value)  # type: ignore[arg-type]


def encode_value(
    value: int | float,
    data_type: DataType = DataType.UINT16,
    word_order: WordOrder = WordOrder.HIGH_FIRST,
) -> list[int]:
    """Inverse of decode_words: split a value into register words."""
    data_type = DataType(data_type)
    if data_type != DataType.FLOAT32:
        value = int(value)
    return list(
        ModbusTcpClient.convert_to_registers(
            value,
            _PYMODBUS_TYPES[data_type],
            word_order=_PYMODBUS_WORD_ORDER[WordOrder(word_order)],
        )
    )


def apply_scale(raw: int | float, scale: float) -> float:
    """Scale factor is a divisor: raw centivolts / 100 -> volts."""
    return raw / scale


def decode_register(descriptor: RegisterDescriptor, words: list[int]) -> tuple[int | float, float]:
    """Return (raw, scaled) for one descriptor's words."""
    if descriptor.data_type is None:
        raise ValueError(f"Register {descriptor.name!r} has no data type")
    raw = decode_words(words, descriptor.data_type, descriptor.word_order)
    return raw, apply_scale(raw, descriptor.scale)
