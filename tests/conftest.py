"""Shared test doubles: an in-process Modbus TCP meter and a fake pool session."""

import asyncio
import struct

from pymeter_modbus.errors import ErrorKind, ModbusError
from pymeter_modbus.types import DeviceAddress, RegisterBank

MBAP_HEADER = struct.Struct(">HHHB")
READ_HOLDING_REGISTERS = 0x03
READ_INPUT_REGISTERS = 0x04


def read_response(tid: int, unit: int, fc: int, words: list[int]) -> bytes:
    body = struct.pack(f">BB{len(words)}H", fc, 2 * len(words), *words)
    return MBAP_HEADER.pack(tid, 0, len(body) + 1, unit) + body


def exception_response(tid: int, unit: int, fc: int, code: int) -> bytes:
    body = bytes((fc | 0x80, code))
    return MBAP_HEADER.pack(tid, 0, len(body) + 1, unit) + body


class FakeMeter:
    """
    Minimal Modbus TCP server for FC03/FC04 on 127.0.0.1.

    - `holding` / `input`: address -> word
    - `exceptions`: start address -> exception code to answer with
    - `silent`: start addresses that never get an answer
    - `drop`: start addresses on which the connection is closed
    - `short`: start addresses answered with one register too few
    - `wrong_function`: start addresses answered under the other read function code
    """

    def __init__(
        self,
        holding: dict[int, int] | None = None,
        input: dict[int, int] | None = None,
    ) -> None:
        self.holding = dict(holding or {})
        self.input = dict(input or {})
        self.exceptions: dict[int, int] = {}
        self.silent: set[int] = set()
        self.drop: set[int] = set()
        self.short: set[int] = set()
        self.wrong_function: set[int] = set()
        self.tid_offset = 0
        self.requests: list[tuple[int, int, int, int, int]] = []
        self.connections = 0
        self.port = 0
        self._server: asyncio.AbstractServer | None = None
        self._writers: list[asyncio.StreamWriter] = []

    def address(self, unit_id: int = 1) -> DeviceAddress:
        return DeviceAddress("127.0.0.1", self.port, unit_id)

    async def __aenter__(self) -> "FakeMeter":
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, *args: object) -> None:
        for writer in self._writers:
            writer.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        self._writers.append(writer)
        try:
            while True:
                tid, _pid, length, unit = MBAP_HEADER.unpack(await reader.readexactly(MBAP_HEADER.size))
                fc, address, count = struct.unpack(">BHH", await reader.readexactly(length - 1))
                self.requests.append((tid, unit, fc, address, count))
                if address in self.drop:
                    break
                if address in self.silent:
                    continue
                if address in self.exceptions:
                    writer.write(exception_response(tid, unit, fc, self.exceptions[address]))
                else:
                    bank = self.holding if fc == READ_HOLDING_REGISTERS else self.input
                    words = [bank.get(a, 0) for a in range(address, address + count)]
                    if address in self.short:
                        words = words[:-1]
                    if address in self.wrong_function:
                        fc = READ_INPUT_REGISTERS if fc == READ_HOLDING_REGISTERS else READ_HOLDING_REGISTERS
                    writer.write(read_response((tid + self.tid_offset) & 0xFFFF, unit, fc, words))
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()


class FakeSession:
    """Stands in for TransportSession inside ConnectionPool tests."""

    def __init__(self, address: DeviceAddress, connect_error: ModbusError | None = None) -> None:
        self.address = address
        self.healthy = True
        self.closed = False
        self.connect_calls = 0
        self.connect_error = connect_error
        self.connect_delay = 0.0
        self.close_delay = 0.0
        self.responsive = True
        self.reads: list[tuple[RegisterBank, int, int, float]] = []

    async def connect(self, timeout: float = 3.0) -> None:
        self.connect_calls += 1
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error

    async def read_registers(self, bank: RegisterBank, address: int, count: int, timeout: float = 3.0) -> list[int]:
        self.reads.append((bank, address, count, timeout))
        if not self.responsive:
            raise ModbusError(ErrorKind.TIMEOUT, f"No response within {timeout:.3g}s", address=self.address)
        return [0] * count

    def is_healthy(self) -> bool:
        return self.healthy and not self.closed

    async def close(self) -> None:
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self.closed = True


class ManualClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
