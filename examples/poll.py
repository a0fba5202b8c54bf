#!/usr/bin/env python3
"""Example: poll several meters on an interval over shared pooled sessions; Ctrl+C to stop."""

import asyncio
import sys

from pymeter_modbus import ConnectionPool, DeviceAddress, MeterReader, PoolConfig
from pymeter_modbus.errors import ModbusError


async def poll_meter(reader: MeterReader, address: DeviceAddress, interval_s: float) -> None:
    async for reading in reader.poll(address, ["voltage", "current", "power"], interval=interval_s):
        values = " ".join(
            f"{name}={v.scaled_value:.2f}" if v.is_ok else f"{name}=ERR" for name, v in reading.values.items()
        )
        print(f"{address} {reading.timestamp:%H:%M:%S} {values}")


async def run(meters: list[DeviceAddress], interval_s: float) -> None:
    async with ConnectionPool(PoolConfig(per_key_max=1)) as pool:
        reader = MeterReader(pool)
        print(f"Polling {len(meters)} meter(s) every {interval_s}s (Ctrl+C to stop)...")
        await asyncio.gather(*(poll_meter(reader, m, interval_s) for m in meters))


def main() -> None:
    # Two meters behind one gateway, distinguished by unit id
    meters = [
        DeviceAddress("192.168.1.10", 502, unit_id=1),
        DeviceAddress("192.168.1.10", 502, unit_id=2),
    ]

    try:
        asyncio.run(run(meters, 1.0))
    except KeyboardInterrupt:
        print("\nStopped.")
    except ModbusError as e:
        print(f"Modbus/connection error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
