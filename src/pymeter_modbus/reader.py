"""MeterReader: read a set of named registers from one device and assemble a MeterReading."""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable

from .decode import decode_register
from .errors import ErrorKind, ModbusError
from .pool import ConnectionPool
from .registermap import RegisterMap, get_default_register_map
from .session import MAX_READ_COUNT
from .types import DeviceAddress, MeterReading, ReadPolicy, RegisterBank, RegisterDescriptor, RegisterValue

logger = logging.getLogger(__name__)

Block = tuple[RegisterBank, int, int, list[RegisterDescriptor]]


def _coalesce_blocks(descriptors: list[RegisterDescriptor]) -> list[Block]:
    """
    Group descriptors into contiguous, non-overlapping blocks per bank.
    Returns list of (bank, start_address, word_count, [descriptor, ...]).
    """
    by_bank: dict[RegisterBank, list[RegisterDescriptor]] = defaultdict(list)
    for d in descriptors:
        by_bank[d.bank].append(d)

    blocks: list[Block] = []
    for bank, members in by_bank.items():
        members = sorted(members, key=lambda d: d.address)
        start = members[0].address
        end = members[0].end
        group = [members[0]]
        for d in members[1:]:
            if d.address == end and d.end - start <= MAX_READ_COUNT:
                group.append(d)
                end = d.end
            else:
                blocks.append((bank, start, end - start, group))
                start, end, group = d.address, d.end, [d]
        blocks.append((bank, start, end - start, group))
    return blocks


def _single_blocks(descriptors: list[RegisterDescriptor]) -> list[Block]:
    return [(d.bank, d.address, d.count, [d]) for d in descriptors]


class MeterReader:
    """
    Reads meters through a ConnectionPool, one transaction at a time per session.

    A failing register never aborts the read: it is reported with status error
    and the remaining registers are still read.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        register_map: RegisterMap | None = None,
        policy: ReadPolicy | None = None,
        coalesce: bool = False,
    ) -> None:
        self._pool = pool
        self._register_map = register_map if register_map is not None else get_default_register_map()
        self._policy = policy or ReadPolicy()
        self._coalesce = coalesce

    @property
    def register_map(self) -> RegisterMap:
        return self._register_map

    @property
    def policy(self) -> ReadPolicy:
        return self._policy

    def _resolve(self, registers: Iterable[RegisterDescriptor | str] | None) -> list[RegisterDescriptor]:
        descriptors = self._register_map.resolve(registers)
        if not descriptors:
            raise ValueError("No registers requested")
        seen: set[str] = set()
        for d in descriptors:
            if d.name in seen:
                raise ValueError(f"Register requested twice: {d.name!r}")
            seen.add(d.name)
        return descriptors

    async def read_meter(
        self,
        address: DeviceAddress,
        registers: Iterable[RegisterDescriptor | str] | None = None,
        policy: ReadPolicy | None = None,
    ) -> MeterReading:
        """
        Read `registers` (descriptors or map names; None = the map's default set).

        Raises ModbusError when no session can be had (pool exhausted, connect
        refused or timed out). Otherwise returns a MeterReading that lists every
        requested register with status ok or error.
        """
        policy = policy or self._policy
        descriptors = self._resolve(registers)
        blocks = _coalesce_blocks(descriptors) if self._coalesce else _single_blocks(descriptors)

        session = await self._pool.acquire(
            address,
            acquire_timeout=policy.acquire_timeout,
            connect_timeout=policy.connect_timeout,
        )
        timestamp = datetime.now(timezone.utc)
        results: dict[str, RegisterValue] = {}
        try:
            for bank, start, count, group in blocks:
                try:
                    words = await session.read_registers(bank, start, count, policy.read_timeout)
                except ModbusError as e:
                    logger.debug("Read of %s@%d+%d on %s failed: %s", bank.value, start, count, address, e)
                    for d in group:
                        results[d.name] = RegisterValue.failed(e)
                    continue
                for d in group:
                    offset = d.address - start
                    try:
                        raw, scaled = decode_register(d, words[offset : offset + d.count])
                    except ModbusError as e:
                        results[d.name] = RegisterValue.failed(
                            ModbusError(e.kind, e.message, address=address, cause=e)
                        )
                    else:
                        results[d.name] = RegisterValue.ok(raw, scaled)
        finally:
            # hand the session back even when the caller was cancelled mid-read
            if session.is_healthy():
                await asyncio.shield(self._pool.release(session))
            else:
                await asyncio.shield(self._pool.discard(session))

        values = {d.name: results[d.name] for d in descriptors}
        failures = {name: v.error for name, v in values.items() if v.error is not None}
        error = None
        if failures:
            error = ModbusError(
                ErrorKind.PARTIAL_READ,
                f"{len(failures)} of {len(values)} register(s) failed",
                address=address,
                per_register_cause=failures,
            )
            logger.info("Partial read from %s: failed %s", address, ", ".join(failures))
        return MeterReading(address=address, timestamp=timestamp, values=values, error=error)

    async def poll(
        self,
        address: DeviceAddress,
        registers: Iterable[RegisterDescriptor | str] | None = None,
        interval: float = 1.0,
        policy: ReadPolicy | None = None,
    ) -> AsyncIterator[MeterReading]:
        """Yield read_meter(...) every `interval` seconds indefinitely."""
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        descriptors = self._resolve(registers)
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            yield await self.read_meter(address, descriptors, policy)
            await asyncio.sleep(max(0.0, interval - (loop.time() - started)))
