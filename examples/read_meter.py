#!/usr/bin/env python3
"""Example: read the default register set from one meter through a connection pool."""

import asyncio
import sys

from pymeter_modbus import ConnectionPool, DeviceAddress, MeterReader, ReadPolicy
from pymeter_modbus.errors import ModbusError, UnknownRegisterError


async def read(address: DeviceAddress) -> int:
    async with ConnectionPool() as pool:
        reader = MeterReader(pool, policy=ReadPolicy(read_timeout=2.0))

        reading = await reader.read_meter(address)
        for name, value in reading.values.items():
            if value.is_ok:
                print(f"{name} = {value.scaled_value:.2f} (raw {value.raw})")
            else:
                print(f"{name}: {value.error}")

        # Ad-hoc subset by name
        subset = await reader.read_meter(address, ["voltage", "energy_kwh"])
        print(subset.scaled())
        return 0 if reading.overall_success else 1


def main() -> None:
    address = DeviceAddress("192.168.1.10", 502, unit_id=1)  # change to your meter

    try:
        sys.exit(asyncio.run(read(address)))
    except UnknownRegisterError as e:
        print(f"Unknown register: {e}", file=sys.stderr)
        sys.exit(1)
    except ModbusError as e:
        print(f"Modbus/connection error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
