"""TransportSession: one pymodbus TCP client bound to one Modbus device, one transaction at a time."""

import asyncio
import logging
import struct
import time
from typing import Any, Callable

from pymodbus.client import AsyncModbusTcpClient
from pymodbus.exceptions import ConnectionException, ModbusIOException
from pymodbus.exceptions import ModbusException as PymodbusException
from pymodbus.pdu import ModbusPDU

from .errors import ErrorKind, ModbusError
from .types import DeviceAddress, RegisterBank, SessionState

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., AsyncModbusTcpClient]

MAX_READ_COUNT = 125

READ_HOLDING_REGISTERS = 0x03
READ_INPUT_REGISTERS = 0x04

EXCEPTION_NAMES: dict[int, str] = {
    0x01: "Illegal function",
    0x02: "Illegal data address",
    0x03: "Illegal data value",
    0x04: "Server device failure",
    0x05: "Acknowledge",
    0x06: "Server device busy",
    0x08: "Memory parity error",
    0x0A: "Gateway path unavailable",
    0x0B: "Gateway target device failed to respond",
}

# pymodbus' own connect/response wait; deadlines are enforced with wait_for around every call
CLIENT_TIMEOUT = 60.0

_MBAP_PREFIX = struct.Struct(">HHHB")


def function_code_for(bank: RegisterBank) -> int:
    if RegisterBank(bank) == RegisterBank.HOLDING:
        return READ_HOLDING_REGISTERS
    return READ_INPUT_REGISTERS


class TransportSession:
    """
    Modbus TCP session bound to a DeviceAddress.

    Wraps pymodbus' AsyncModbusTcpClient with retries and reconnects disabled.
    Concurrent read_registers calls queue on an internal lock, so at most one
    request is on the wire at any time. A timed-out, cancelled or desynchronised
    exchange closes the client; after close() every operation fails with
    CONNECTION_REFUSED.
    """

    def __init__(self, address: DeviceAddress, *, client_factory: ClientFactory | None = None) -> None:
        self._address = address
        self._client_factory = client_factory or AsyncModbusTcpClient
        self._client: AsyncModbusTcpClient | None = None
        self._state = SessionState.DISCONNECTED
        self._lock = asyncio.Lock()
        self._protocol_fault = False
        # resolved with a ModbusError when the link fails outside a pymodbus call
        self._link_fault: asyncio.Future[ModbusError] | None = None
        self._sent_ids: tuple[int, int] | None = None
        self.created_at = time.monotonic()
        self.last_used = self.created_at
        self.stats = {"reads": 0, "errors": 0}

    def __repr__(self) -> str:
        return f"<TransportSession {self._address} {self._state.value}>"

    @property
    def address(self) -> DeviceAddress:
        return self._address

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def transaction_id(self) -> int:
        """Id of the most recent request (0 before the first)."""
        if self._client is None:
            return 0
        return self._client.ctx.next_tid

    def _error(self, kind: ErrorKind, message: str, **kwargs: Any) -> ModbusError:
        return ModbusError(kind, message, address=self._address, **kwargs)

    def _connect_failed(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
        if self._state == SessionState.CONNECTING:
            self._state = SessionState.DISCONNECTED

    def _fail_link(self, error: ModbusError) -> None:
        if self._link_fault is not None and not self._link_fault.done():
            self._link_fault.set_result(error)

    def _trace_connect(self, connected: bool) -> None:
        if not connected:
            self._fail_link(self._error(ErrorKind.CONNECTION_REFUSED, "Connection closed by peer"))

    def _trace_packet(self, sending: bool, data: bytes) -> bytes:
        # pymodbus silently skips frames with a foreign transaction/unit id; fail the exchange instead
        if len(data) >= _MBAP_PREFIX.size:
            transaction_id, _protocol, _length, unit_id = _MBAP_PREFIX.unpack_from(data)
            if sending:
                self._sent_ids = (transaction_id, unit_id)
            elif self._sent_ids is not None and (transaction_id, unit_id) != self._sent_ids:
                sent_tid, sent_unit = self._sent_ids
                self._fail_link(
                    self._error(
                        ErrorKind.INVALID_RESPONSE,
                        f"Response id mismatch: sent transaction {sent_tid}/unit {sent_unit}, "
                        f"got {transaction_id}/{unit_id}",
                    )
                )
        return data

    async def connect(self, timeout: float = 3.0) -> None:
        """Open the TCP connection. No-op when already connected."""
        if self._state == SessionState.CLOSED:
            raise self._error(ErrorKind.CONNECTION_REFUSED, "Session is closed")
        if self._state in (SessionState.READY, SessionState.IN_FLIGHT):
            return
        if self._state == SessionState.CONNECTING:
            raise self._error(ErrorKind.CONNECTION_REFUSED, "Connect already in progress")

        self._state = SessionState.CONNECTING
        self._link_fault = asyncio.get_running_loop().create_future()
        self._sent_ids = None
        self._client = self._client_factory(
            self._address.ip,
            port=self._address.port,
            timeout=CLIENT_TIMEOUT,
            retries=0,
            reconnect_delay=0,
            trace_packet=self._trace_packet,
            trace_connect=self._trace_connect,
        )
        try:
            connected = await asyncio.wait_for(self._client.connect(), timeout)
        except asyncio.TimeoutError:
            self._connect_failed()
            raise self._error(ErrorKind.TIMEOUT, f"Connect timed out after {timeout:.3g}s") from None
        except asyncio.CancelledError:
            self._connect_failed()
            raise

        if self._state == SessionState.CLOSED:
            # closed while connecting
            self._connect_failed()
            raise self._error(ErrorKind.CONNECTION_REFUSED, "Session closed during connect")
        if not connected:
            # pymodbus reports refused and unreachable hosts as a False return
            self._connect_failed()
            logger.error("Modbus connection failed to %s", self._address)
            raise self._error(ErrorKind.CONNECTION_REFUSED, f"Failed to connect to {self._address}")
        self._state = SessionState.READY
        self._protocol_fault = False
        self.last_used = time.monotonic()
        logger.info("Modbus connected to %s", self._address)

    async def read_registers(
        self,
        bank: RegisterBank,
        address: int,
        count: int,
        timeout: float = 3.0,
    ) -> list[int]:
        """
        Read `count` 16-bit words starting at `address` (FC03 holding, FC04 input).

        `timeout` covers both waiting for a busy session and the exchange itself.
        """
        if not 1 <= count <= MAX_READ_COUNT:
            raise ValueError(f"count must be 1-{MAX_READ_COUNT}, got {count}")
        if not 0 <= address <= 0xFFFF or address + count - 1 > 0xFFFF:
            raise ValueError(f"address range {address}+{count} outside 0-65535")
        function_code = function_code_for(bank)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout)
        except asyncio.TimeoutError:
            raise self._error(ErrorKind.TIMEOUT, f"Session busy for {timeout:.3g}s") from None
        try:
            remaining = max(deadline - loop.time(), 0.0)
            return await self._transact(function_code, address, count, remaining)
        finally:
            self._lock.release()

    async def _transact(self, function_code: int, address: int, count: int, timeout: float) -> list[int]:
        if self._state != SessionState.READY or self._client is None:
            raise self._error(ErrorKind.CONNECTION_REFUSED, f"Session is not connected ({self._state.value})")
        if not self._client.connected:
            self._abort("connection lost while idle")
            raise self._error(ErrorKind.CONNECTION_REFUSED, "Connection closed by peer")

        self._state = SessionState.IN_FLIGHT
        try:
            rr = await asyncio.wait_for(self._exchange(function_code, address, count), timeout)
        except asyncio.TimeoutError:
            self.stats["errors"] += 1
            self._abort(f"no response to transaction {self.transaction_id}")
            raise self._error(ErrorKind.TIMEOUT, f"No response within {timeout:.3g}s") from None
        except ModbusError as e:
            self.stats["errors"] += 1
            self._abort(e.message)
            raise
        except ConnectionException as e:
            self.stats["errors"] += 1
            self._abort(f"connection lost: {e}")
            raise self._error(ErrorKind.CONNECTION_REFUSED, "Connection closed by peer", cause=e) from e
        except ModbusIOException as e:
            self.stats["errors"] += 1
            self._abort(str(e))
            raise self._error(ErrorKind.TIMEOUT, f"No response: {e}", cause=e) from e
        except PymodbusException as e:
            self.stats["errors"] += 1
            self._abort(str(e))
            raise self._error(ErrorKind.INVALID_RESPONSE, str(e), cause=e) from e
        except asyncio.CancelledError:
            self._abort(f"transaction {self.transaction_id} cancelled")
            raise

        return self._accept(rr, function_code, count)

    async def _exchange(self, function_code: int, address: int, count: int) -> ModbusPDU:
        client = self._client
        link_fault = self._link_fault
        if client is None or link_fault is None:
            raise self._error(ErrorKind.CONNECTION_REFUSED, "Session is not connected")
        if function_code == READ_HOLDING_REGISTERS:
            call = client.read_holding_registers(address, count=count, device_id=self._address.unit_id)
        else:
            call = client.read_input_registers(address, count=count, device_id=self._address.unit_id)
        request = asyncio.ensure_future(call)
        try:
            await asyncio.wait({request, link_fault}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not request.done():
                request.cancel()
        if link_fault.done():
            if request.done() and not request.cancelled():
                # superseded by the link fault
                request.exception()
            raise link_fault.result()
        return request.result()

    def _accept(self, rr: ModbusPDU, function_code: int, count: int) -> list[int]:
        """Validate a decoded response; a device exception leaves the stream in sync."""
        if rr.isError():
            self.stats["errors"] += 1
            self._protocol_fault = True
            self._state = SessionState.READY
            code = getattr(rr, "exception_code", None)
            if code is None:
                raise self._error(ErrorKind.PROTOCOL_ERROR, str(rr))
            name = EXCEPTION_NAMES.get(code, "Unknown exception")
            raise self._error(ErrorKind.PROTOCOL_ERROR, f"Device exception {code:#04x}: {name}", exception_code=code)
        if rr.function_code != function_code:
            self.stats["errors"] += 1
            self._abort(f"function code mismatch: sent {function_code:#04x}, got {rr.function_code:#04x}")
            raise self._error(
                ErrorKind.INVALID_RESPONSE,
                f"Function code mismatch: sent {function_code:#04x}, got {rr.function_code:#04x}",
            )
        registers = list(getattr(rr, "registers", None) or [])
        if len(registers) != count:
            self.stats["errors"] += 1
            self._protocol_fault = True
            self._state = SessionState.READY
            raise self._error(
                ErrorKind.PROTOCOL_ERROR,
                f"Response has {len(registers)} register(s), {count} requested",
            )

        self._state = SessionState.READY
        self._protocol_fault = False
        self.stats["reads"] += 1
        self.last_used = time.monotonic()
        return registers

    def is_healthy(self) -> bool:
        """True iff the socket is open and no protocol error since the last good transaction."""
        if self._state not in (SessionState.READY, SessionState.IN_FLIGHT) or self._protocol_fault:
            return False
        if self._link_fault is not None and self._link_fault.done():
            return False
        return self._client is not None and self._client.connected

    def _abort(self, reason: str) -> None:
        """Drop the connection without waiting; protocol state is indeterminate."""
        logger.warning("Closing Modbus session to %s: %s", self._address, reason)
        if self._client is not None:
            self._client.close()
        self._client = None
        self._state = SessionState.CLOSED

    async def close(self) -> None:
        """Close the TCP connection. Safe to call more than once."""
        if self._state == SessionState.CLOSED:
            return
        if self._state == SessionState.CONNECTING:
            # connect() releases the client once its handshake returns
            self._state = SessionState.CLOSED
            return
        client = self._client
        self._client = None
        self._state = SessionState.CLOSED
        if client is not None:
            client.close()
            logger.info("Modbus disconnected from %s", self._address)

    async def __aenter__(self) -> "TransportSession":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
