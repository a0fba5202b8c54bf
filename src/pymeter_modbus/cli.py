#!/usr/bin/env python3
"""Command line for pymeter-modbus using Typer."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from . import __version__  # type: ignore
from .errors import ModbusError, UnknownRegisterError
from .pool import ConnectionPool
from .reader import MeterReader
from .registermap import DEFAULT_PROFILE, RegisterMap, get_default_register_map
from .session import TransportSession
from .types import DeviceAddress, MeterReading, PoolConfig, ReadPolicy, RegisterBank

app = typer.Typer(
    name="pymeter",
    help="Read electric, gas and water meters over Modbus TCP.",
    no_args_is_help=True,
)

logger = logging.getLogger(__name__)

# ============================================================================
# Shared options and helpers
# ============================================================================

HostOption = Annotated[
    Optional[str],
    typer.Option("--host", "-h", help="Meter hostname or IP address", envvar="PYMETER_HOST"),
]
PortOption = Annotated[
    int,
    typer.Option("--port", "-p", help="Modbus TCP port", envvar="PYMETER_PORT"),
]
UnitIdOption = Annotated[
    int,
    typer.Option("--unit-id", "-u", help="Modbus unit ID", envvar="PYMETER_UNIT_ID"),
]
TimeoutOption = Annotated[
    float,
    typer.Option("--timeout", "-t", help="Connect/read timeout in seconds", envvar="PYMETER_TIMEOUT"),
]
ProfileOption = Annotated[
    str,
    typer.Option("--profile", help="Packaged register map profile", envvar="PYMETER_PROFILE"),
]
MapFileOption = Annotated[
    Optional[Path],
    typer.Option("--map", help="Register map JSON file (overrides --profile)", envvar="PYMETER_MAP_FILE"),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable debug logging"),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]
CoalesceOption = Annotated[
    bool,
    typer.Option("--coalesce", help="Read contiguous registers in one transaction"),
]
NamesArgument = Annotated[
    Optional[list[str]],
    typer.Argument(help="Register names to read (default: the map's default set)"),
]


def setup_logging(verbose: bool) -> None:
    """Configure logging based on verbose flag."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s" if not verbose else "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def load_register_map(profile: str, map_file: Optional[Path]) -> RegisterMap:
    """Register map from --map if given, else the packaged profile."""
    try:
        if map_file is not None:
            if not map_file.is_file():
                typer.echo(f"Error: Register map file not found: {map_file}", err=True)
                raise typer.Exit(2)
            return RegisterMap.from_file(map_file)
        return get_default_register_map(profile)
    except ValueError as e:
        typer.echo(f"Error: Invalid register map: {e}", err=True)
        raise typer.Exit(2)


def create_address(host: Optional[str], port: int, unit_id: int) -> DeviceAddress:
    """Build the DeviceAddress for commands that talk to a meter."""
    if not host:
        typer.echo("Error: --host is required for this command", err=True)
        raise typer.Exit(2)
    try:
        return DeviceAddress(ip=host, port=port, unit_id=unit_id)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)


def make_policy(timeout: float) -> ReadPolicy:
    return ReadPolicy(connect_timeout=timeout, read_timeout=timeout, acquire_timeout=timeout)


def format_value(value: float | None) -> str:
    """Format a scaled value for display: 2 decimal places, ERR for failed registers."""
    if value is None:
        return "ERR"
    return f"{value:.2f}"


def echo_reading(reading: MeterReading, register_map: RegisterMap) -> None:
    """Human-readable table of one reading."""
    typer.echo(f"{reading.address}  {reading.timestamp.isoformat()}")
    for name, value in reading.values.items():
        unit = register_map.lookup(name).unit if name in register_map else ""
        if value.error is None:
            typer.echo(f"  {name:<20} {format_value(value.scaled_value):>14} {unit}".rstrip())
        else:
            typer.echo(f"  {name:<20} {'ERR':>14} {value.error.kind.value}: {value.error.message}")


async def _read_once(
    address: DeviceAddress,
    names: Optional[list[str]],
    register_map: RegisterMap,
    policy: ReadPolicy,
    coalesce: bool,
) -> MeterReading:
    config = PoolConfig(per_key_max=1, connect_timeout=policy.connect_timeout, acquire_timeout=policy.acquire_timeout)
    async with ConnectionPool(config) as pool:
        reader = MeterReader(pool, register_map, policy, coalesce=coalesce)
        return await reader.read_meter(address, names or None)


# ============================================================================
# Commands
# ============================================================================


@app.command()
def read(
    names: NamesArgument = None,
    host: HostOption = None,
    port: PortOption = 502,
    unit_id: UnitIdOption = 1,
    timeout: TimeoutOption = 3.0,
    profile: ProfileOption = DEFAULT_PROFILE,
    map_file: MapFileOption = None,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
    coalesce: CoalesceOption = False,
) -> None:
    """
    Read a meter once.

    Exit code 0 when every register was read, 1 when some registers failed,
    3 when the meter could not be reached.
    """
    setup_logging(verbose)

    try:
        address = create_address(host, port, unit_id)
        register_map = load_register_map(profile, map_file)
        register_map.resolve(names or None)
        reading = asyncio.run(_read_once(address, names, register_map, make_policy(timeout), coalesce))
    except typer.Exit:
        raise
    except UnknownRegisterError as e:
        typer.echo(f"Error: Unknown register: {e}", err=True)
        raise typer.Exit(2)
    except ModbusError as e:
        typer.echo(f"Error: Connection/Modbus error: {e}", err=True)
        raise typer.Exit(3)
    except Exception as e:
        typer.echo(f"Error: Unexpected error: {e}", err=True)
        if verbose:
            import traceback
            traceback.print_exc()
        raise typer.Exit(4)

    if json_output:
        typer.echo(json.dumps(reading.to_dict(), indent=2))
    else:
        echo_reading(reading, register_map)
    if not reading.overall_success:
        raise typer.Exit(1)


@app.command()
def poll(
    names: NamesArgument = None,
    host: HostOption = None,
    port: PortOption = 502,
    unit_id: UnitIdOption = 1,
    timeout: TimeoutOption = 3.0,
    profile: ProfileOption = DEFAULT_PROFILE,
    map_file: MapFileOption = None,
    verbose: VerboseOption = False,
    coalesce: CoalesceOption = False,
    interval: Annotated[float, typer.Option("--interval", "-i", help="Polling interval in seconds")] = 1.0,
    once: Annotated[bool, typer.Option("--once", help="Poll once and exit")] = False,
    format: Annotated[str, typer.Option("--format", "-f", help="Output format: text, json, csv")] = "text",
) -> None:
    """
    Continuously poll a meter at the given interval over one pooled connection.

    Outputs format:
    - text: timestamp + name=value pairs (default), ERR for failed registers
    - json: NDJSON, one reading per line
    - csv: register names as columns, one row per poll cycle, empty cell on error

    Press Ctrl+C to stop.
    """
    setup_logging(verbose)

    if format not in ("text", "json", "csv"):
        typer.echo(f"Error: Invalid format '{format}'. Must be text, json, or csv.", err=True)
        raise typer.Exit(2)

    if interval <= 0:
        typer.echo(f"Error: Interval must be positive, got {interval}", err=True)
        raise typer.Exit(2)

    try:
        address = create_address(host, port, unit_id)
        register_map = load_register_map(profile, map_file)
        columns = [d.name for d in register_map.resolve(names or None)]
        policy = make_policy(timeout)

        async def run() -> None:
            config = PoolConfig(per_key_max=1, connect_timeout=policy.connect_timeout, acquire_timeout=policy.acquire_timeout)
            async with ConnectionPool(config) as pool:
                reader = MeterReader(pool, register_map, policy, coalesce=coalesce)
                if format == "csv":
                    typer.echo("timestamp," + ",".join(columns))
                while True:
                    reading = await reader.read_meter(address, columns)
                    timestamp = reading.timestamp.isoformat()
                    scaled = {name: reading.values[name].scaled_value for name in columns}

                    if format == "text":
                        pairs = " ".join(f"{name}={format_value(scaled[name])}" for name in columns)
                        typer.echo(f"{timestamp} {pairs}")
                    elif format == "json":
                        typer.echo(json.dumps(reading.to_dict()))
                    elif format == "csv":
                        cells = ["" if scaled[name] is None else format_value(scaled[name]) for name in columns]
                        typer.echo(timestamp + "," + ",".join(cells))

                    if once:
                        break
                    await asyncio.sleep(interval)

        asyncio.run(run())
    except typer.Exit:
        raise
    except UnknownRegisterError as e:
        typer.echo(f"Error: Unknown register: {e}", err=True)
        raise typer.Exit(2)
    except ModbusError as e:
        typer.echo(f"Error: Connection/Modbus error: {e}", err=True)
        raise typer.Exit(3)
    except KeyboardInterrupt:
        typer.echo("\nStopped by user", err=True)
        raise typer.Exit(0)
    except Exception as e:
        typer.echo(f"Error: Unexpected error: {e}", err=True)
        if verbose:
            import traceback
            traceback.print_exc()
        raise typer.Exit(4)


@app.command()
def registers(
    profile: ProfileOption = DEFAULT_PROFILE,
    map_file: MapFileOption = None,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
) -> None:
    """
    List the register map: name, bank, address, count, scale, type and word order.

    Does not require a connection.
    """
    setup_logging(verbose)

    try:
        register_map = load_register_map(profile, map_file)
    except typer.Exit:
        raise
    except (ValueError, OSError) as e:
        typer.echo(f"Error: Invalid register map: {e}", err=True)
        raise typer.Exit(2)

    rows = [
        {
            "name": d.name,
            "bank": d.bank.value,
            "address": d.address,
            "count": d.count,
            "scale": d.scale,
            "data_type": d.data_type.value if d.data_type else None,
            "word_order": d.word_order.value,
            "unit": d.unit,
            "default": d.name in register_map.default_set,
        }
        for d in register_map
    ]
    if json_output:
        typer.echo(json.dumps({"profile": register_map.profile, "registers": rows}, indent=2))
        return
    typer.echo(f"Profile: {register_map.profile} ({len(rows)} registers, * = default set)")
    for row in rows:
        mark = "*" if row["default"] else " "
        typer.echo(
            f"{mark} {row['name']:<20} {row['bank']:<8} {row['address']:>5} x{row['count']} "
            f"/{row['scale']:g} {row['data_type']:<8} {row['word_order']:<10} {row['unit']}".rstrip()
        )


@app.command()
def ping(
    host: HostOption = None,
    port: PortOption = 502,
    unit_id: UnitIdOption = 1,
    timeout: TimeoutOption = 3.0,
    verbose: VerboseOption = False,
    register: Annotated[int, typer.Option("--register", help="Holding register to read")] = 0,
) -> None:
    """
    Test connectivity to the meter by reading one holding register.
    """
    setup_logging(verbose)

    async def run(address: DeviceAddress) -> int:
        session = TransportSession(address)
        try:
            await session.connect(timeout)
            words = await session.read_registers(RegisterBank.HOLDING, register, 1, timeout)
        finally:
            await session.close()
        return words[0]

    try:
        address = create_address(host, port, unit_id)
        value = asyncio.run(run(address))
        typer.echo(f"OK: Connected to {host}:{port} (unit {unit_id}), register {register} = {value}")
    except typer.Exit:
        raise
    except ModbusError as e:
        typer.echo(f"Error: Connection/Modbus error: {e}", err=True)
        raise typer.Exit(3)
    except Exception as e:
        typer.echo(f"Error: Unexpected error: {e}", err=True)
        if verbose:
            import traceback
            traceback.print_exc()
        raise typer.Exit(4)


@app.command()
def info(
    profile: ProfileOption = DEFAULT_PROFILE,
    map_file: MapFileOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show package version and the register map in use."""
    register_map = load_register_map(profile, map_file)
    info_data = {
        "version": __version__,
        "profile": register_map.profile,
        "registers": len(register_map),
        "default_set": register_map.default_set,
    }
    if json_output:
        typer.echo(json.dumps(info_data, indent=2))
    else:
        typer.echo(f"pymeter-modbus version: {info_data['version']}")
        typer.echo(f"Profile: {info_data['profile']} ({info_data['registers']} registers)")
        typer.echo(f"Default set: {', '.join(register_map.default_set)}")


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        typer.echo(f"pymeter-modbus {__version__}")
        raise typer.Exit(0)


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=version_callback, is_eager=True, help="Show version and exit"),
    ] = None,
) -> None:
    """pymeter - read meters over Modbus TCP with pooled connections."""
    pass


if __name__ == "__main__":
    app()
