"""Tests for RegisterMap loading and lookup; generic default profile."""

import json
from pathlib import Path

import pytest

from pymeter_modbus import RegisterMap, get_default_register_map
from pymeter_modbus.errors import UnknownRegisterError
from pymeter_modbus.types import DataType, RegisterBank, RegisterDescriptor, WordOrder


def test_register_map_from_override() -> None:
    fixture = [
        {"name": "voltage", "address": 5, "scale": 200},
        {"name": "energy_kwh", "address": 20, "count": 2, "word_order": "low_first"},
    ]
    m = RegisterMap(map_override=fixture)
    assert m.lookup("voltage") == RegisterDescriptor("voltage", 5, 1, 200.0)
    energy = m.lookup("energy_kwh")
    assert energy.count == 2
    assert energy.word_order == WordOrder.LOW_FIRST
    assert energy.data_type == DataType.UINT32
    assert m.default_set == ["voltage", "energy_kwh"]


def test_register_map_unknown_raises() -> None:
    m = RegisterMap(map_override=[{"name": "voltage", "address": 5}])
    with pytest.raises(UnknownRegisterError) as exc_info:
        m.lookup("bogus")
    assert exc_info.value.name == "bogus"


def test_generic_default_profile() -> None:
    m = get_default_register_map()
    assert m.profile == "generic"
    voltage = m.lookup("voltage")
    assert voltage.address == 5
    assert voltage.scale == 200
    assert voltage.bank == RegisterBank.HOLDING
    assert m.default_set == ["voltage", "current", "power", "frequency", "power_factor", "energy_kwh"]


def test_generic_energy_counters_are_low_word_first() -> None:
    m = get_default_register_map()
    for name, address in (("energy_kwh", 20), ("energy_kvah", 22), ("energy_kvarh", 24)):
        d = m.lookup(name)
        assert d.address == address
        assert d.count == 2
        assert d.word_order == WordOrder.LOW_FIRST


def test_generic_registers_do_not_overlap() -> None:
    m = get_default_register_map()
    used: set[int] = set()
    for d in m:
        span = set(range(d.address, d.end))
        assert not span & used, d.name
        used |= span


def test_unknown_profile_raises() -> None:
    with pytest.raises(ValueError, match="Unknown profile"):
        RegisterMap(profile="nope")


def test_duplicate_override_raises() -> None:
    fixture = [
        {"name": "voltage", "address": 5},
        {"name": "voltage", "address": 6},
    ]
    with pytest.raises(ValueError, match="Duplicate register"):
        RegisterMap(map_override=fixture)


def test_missing_field_raises() -> None:
    with pytest.raises(ValueError, match="missing field 'address'"):
        RegisterMap(map_override=[{"name": "voltage"}])


def test_default_set_must_name_known_registers() -> None:
    with pytest.raises(ValueError, match="unknown register"):
        RegisterMap(map_override=[{"name": "voltage", "address": 5}], default_set=["current"])


def test_resolve_names_and_default_set() -> None:
    m = RegisterMap(
        map_override=[
            {"name": "voltage", "address": 5},
            {"name": "current", "address": 6},
            {"name": "power", "address": 7},
        ],
        default_set=["power"],
    )
    assert [d.name for d in m.resolve()] == ["power"]
    assert [d.name for d in m.resolve(["current", "voltage"])] == ["current", "voltage"]
    ad_hoc = RegisterDescriptor("extra", 100)
    assert m.resolve([ad_hoc, "voltage"])[0] is ad_hoc
    with pytest.raises(UnknownRegisterError):
        m.resolve(["voltage", "bogus"])


def test_contains_and_len() -> None:
    m = RegisterMap(map_override=[{"name": "voltage", "address": 5}])
    assert "voltage" in m
    assert "current" not in m
    assert len(m) == 1


def test_from_file(tmp_path: Path) -> None:
    path = tmp_path / "site_meter.json"
    path.write_text(
        json.dumps(
            {
                "fields": [
                    {"name": "kw", "address": 100, "count": 2, "data_type": "float32"},
                    {"name": "temp", "address": 10, "bank": "input", "data_type": "int16", "scale": 10},
                ],
                "default_set": ["kw"],
            }
        ),
        encoding="utf-8",
    )
    m = RegisterMap.from_file(path)
    assert m.profile == "site_meter"
    assert m.default_set == ["kw"]
    assert m.lookup("kw").data_type == DataType.FLOAT32
    assert m.lookup("temp").bank == RegisterBank.INPUT


def test_from_file_bad_layout(tmp_path: Path) -> None:
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"registers": 1}), encoding="utf-8")
    with pytest.raises(ValueError, match="must be a list"):
        RegisterMap.from_file(path)
