"""Tests for TransportSession against an in-process Modbus TCP device."""

import asyncio
import socket

import pytest

from pymeter_modbus.errors import ErrorKind, ModbusError
from pymeter_modbus.session import TransportSession
from pymeter_modbus.types import DeviceAddress, RegisterBank, SessionState

from conftest import FakeMeter

HOLDING = RegisterBank.HOLDING


def _unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class CountingSession(TransportSession):
    """Records how many exchanges are on the wire at once."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.in_flight = 0
        self.max_in_flight = 0

    async def _exchange(self, *args):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            return await super()._exchange(*args)
        finally:
            self.in_flight -= 1


class StalledClient:
    """Client whose TCP handshake never completes."""

    instances: list["StalledClient"] = []

    def __init__(self, host: str, **kwargs) -> None:
        self.host = host
        self.kwargs = kwargs
        self.closed = False
        self.connected = False
        StalledClient.instances.append(self)

    async def connect(self) -> bool:
        await asyncio.sleep(10)
        return True

    def close(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_read_holding_registers() -> None:
    async with FakeMeter({5: 2300, 6: 1500}) as meter:
        session = TransportSession(meter.address())
        await session.connect()
        assert session.state == SessionState.READY
        assert await session.read_registers(HOLDING, 5, 2) == [2300, 1500]
        assert meter.requests == [(1, 1, 3, 5, 2)]
        assert session.is_healthy()
        assert session.stats == {"reads": 1, "errors": 0}
        await session.close()


@pytest.mark.asyncio
async def test_read_input_registers_uses_fc04() -> None:
    async with FakeMeter(input={10: 42}) as meter:
        async with TransportSession(meter.address(unit_id=7)) as session:
            assert await session.read_registers(RegisterBank.INPUT, 10, 1) == [42]
        assert meter.requests == [(1, 7, 4, 10, 1)]
        assert session.state == SessionState.CLOSED


@pytest.mark.asyncio
async def test_transaction_ids_increment_and_wrap() -> None:
    async with FakeMeter({0: 1}) as meter:
        async with TransportSession(meter.address()) as session:
            await session.read_registers(HOLDING, 0, 1)
            await session.read_registers(HOLDING, 0, 1)
            assert session.transaction_id == 2
            session._client.ctx.next_tid = 65000  # pymodbus wraps here
            await session.read_registers(HOLDING, 0, 1)
        assert [r[0] for r in meter.requests] == [1, 2, 1]


@pytest.mark.asyncio
async def test_connection_refused() -> None:
    session = TransportSession(DeviceAddress("127.0.0.1", _unused_port()))
    with pytest.raises(ModbusError) as exc_info:
        await session.connect(timeout=1.0)
    assert exc_info.value.kind == ErrorKind.CONNECTION_REFUSED
    assert session.state == SessionState.DISCONNECTED
    assert not session.is_healthy()


@pytest.mark.asyncio
async def test_connect_timeout() -> None:
    session = TransportSession(DeviceAddress("10.255.255.1"), client_factory=StalledClient)
    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(ModbusError) as exc_info:
        await session.connect(timeout=0.1)
    assert loop.time() - started < 1.0
    assert exc_info.value.kind == ErrorKind.TIMEOUT
    assert session.state == SessionState.DISCONNECTED

    client = StalledClient.instances[-1]
    assert client.host == "10.255.255.1"
    assert client.kwargs["retries"] == 0
    assert client.kwargs["reconnect_delay"] == 0
    assert client.closed


@pytest.mark.asyncio
async def test_read_timeout_closes_session_within_budget() -> None:
    async with FakeMeter() as meter:
        meter.silent.add(5)
        session = TransportSession(meter.address())
        await session.connect()
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(ModbusError) as exc_info:
            await session.read_registers(HOLDING, 5, 1, timeout=0.2)
        elapsed = loop.time() - started
        assert exc_info.value.kind == ErrorKind.TIMEOUT
        assert 0.15 <= elapsed < 0.7
        assert session.state == SessionState.CLOSED
        assert not session.is_healthy()
        assert session.stats["errors"] == 1


@pytest.mark.asyncio
async def test_exception_response_is_protocol_error_and_unhealthy() -> None:
    async with FakeMeter({5: 2300}) as meter:
        meter.exceptions[6] = 0x02
        async with TransportSession(meter.address()) as session:
            with pytest.raises(ModbusError) as exc_info:
                await session.read_registers(HOLDING, 6, 1)
            err = exc_info.value
            assert err.kind == ErrorKind.PROTOCOL_ERROR
            assert err.exception_code == 2
            assert err.address == meter.address()
            assert session.state == SessionState.READY
            assert not session.is_healthy()

            # the stream is still in sync; a good transaction clears the fault
            assert await session.read_registers(HOLDING, 5, 1) == [2300]
            assert session.is_healthy()


@pytest.mark.asyncio
async def test_transaction_id_mismatch_is_invalid_response() -> None:
    async with FakeMeter({5: 1}) as meter:
        meter.tid_offset = 1
        session = TransportSession(meter.address())
        await session.connect()
        with pytest.raises(ModbusError) as exc_info:
            await session.read_registers(HOLDING, 5, 1)
        assert exc_info.value.kind == ErrorKind.INVALID_RESPONSE
        assert session.state == SessionState.CLOSED


@pytest.mark.asyncio
async def test_peer_closing_connection() -> None:
    async with FakeMeter() as meter:
        meter.drop.add(5)
        session = TransportSession(meter.address())
        await session.connect()
        with pytest.raises(ModbusError) as exc_info:
            await session.read_registers(HOLDING, 5, 1)
        assert exc_info.value.kind == ErrorKind.CONNECTION_REFUSED
        assert session.state == SessionState.CLOSED


@pytest.mark.asyncio
async def test_closed_session_refuses_everything() -> None:
    async with FakeMeter({5: 1}) as meter:
        session = TransportSession(meter.address())
        await session.connect()
        await session.close()
        await session.close()
        assert session.state == SessionState.CLOSED
        with pytest.raises(ModbusError) as exc_info:
            await session.read_registers(HOLDING, 5, 1)
        assert exc_info.value.kind == ErrorKind.CONNECTION_REFUSED
        with pytest.raises(ModbusError) as exc_info:
            await session.connect()
        assert exc_info.value.kind == ErrorKind.CONNECTION_REFUSED


@pytest.mark.asyncio
async def test_read_before_connect_is_refused() -> None:
    session = TransportSession(DeviceAddress("127.0.0.1", 502))
    with pytest.raises(ModbusError, match="not connected"):
        await session.read_registers(HOLDING, 0, 1)


@pytest.mark.asyncio
async def test_invalid_count_raises_value_error() -> None:
    session = TransportSession(DeviceAddress("127.0.0.1", 502))
    with pytest.raises(ValueError, match="count must be"):
        await session.read_registers(HOLDING, 0, 126)


@pytest.mark.asyncio
async def test_concurrent_reads_are_serialised() -> None:
    async with FakeMeter({a: a * 10 for a in range(10)}) as meter:
        session = CountingSession(meter.address())
        await session.connect()
        results = await asyncio.gather(*(session.read_registers(HOLDING, a, 1) for a in range(10)))
        assert results == [[a * 10] for a in range(10)]
        assert session.max_in_flight == 1
        assert sorted(r[0] for r in meter.requests) == list(range(1, 11))
        await session.close()


@pytest.mark.asyncio
async def test_busy_session_wait_counts_against_timeout() -> None:
    async with FakeMeter({5: 1}) as meter:
        meter.silent.add(9)
        session = TransportSession(meter.address())
        await session.connect()
        stuck = asyncio.create_task(session.read_registers(HOLDING, 9, 1, timeout=0.5))
        await asyncio.sleep(0.05)
        with pytest.raises(ModbusError, match="Session busy") as exc_info:
            await session.read_registers(HOLDING, 5, 1, timeout=0.1)
        assert exc_info.value.kind == ErrorKind.TIMEOUT
        with pytest.raises(ModbusError) as exc_info:
            await stuck
        assert exc_info.value.kind == ErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_short_response_is_protocol_error() -> None:
    async with FakeMeter({5: 1, 6: 2}) as meter:
        meter.short.add(5)
        async with TransportSession(meter.address()) as session:
            with pytest.raises(ModbusError, match="1 register") as exc_info:
                await session.read_registers(HOLDING, 5, 2)
            assert exc_info.value.kind == ErrorKind.PROTOCOL_ERROR
            assert session.state == SessionState.READY
            assert not session.is_healthy()


@pytest.mark.asyncio
async def test_function_code_mismatch_is_invalid_response() -> None:
    async with FakeMeter({5: 1}) as meter:
        meter.wrong_function.add(5)
        session = TransportSession(meter.address())
        await session.connect()
        with pytest.raises(ModbusError, match="Function code mismatch") as exc_info:
            await session.read_registers(HOLDING, 5, 1)
        assert exc_info.value.kind == ErrorKind.INVALID_RESPONSE
        assert session.state == SessionState.CLOSED


@pytest.mark.asyncio
async def test_cancelled_read_closes_session() -> None:
    async with FakeMeter() as meter:
        meter.silent.add(5)
        session = TransportSession(meter.address())
        await session.connect()
        task = asyncio.create_task(session.read_registers(HOLDING, 5, 1, timeout=5.0))
        await asyncio.sleep(0.05)
        assert session.state == SessionState.IN_FLIGHT
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert session.state == SessionState.CLOSED
        assert not session.is_healthy()
        assert not session._lock.locked()


@pytest.mark.asyncio
async def test_cancelled_connect_returns_to_disconnected() -> None:
    session = TransportSession(DeviceAddress("10.255.255.1"), client_factory=StalledClient)
    task = asyncio.create_task(session.connect(timeout=5.0))
    await asyncio.sleep(0.05)
    assert session.state == SessionState.CONNECTING
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert session.state == SessionState.DISCONNECTED
    assert StalledClient.instances[-1].closed
