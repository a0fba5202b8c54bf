"""RegisterMap: load embedded JSON via importlib.resources, profile selection, O(1) lookup."""

import json
import logging
from importlib import resources
from pathlib import Path
from typing import Any, Iterable

from .errors import UnknownRegisterError
from .types import RegisterDescriptor

logger = logging.getLogger(__name__)

_PROFILE_RESOURCE: dict[str, str] = {
    "generic": "pymeter_modbus.data.generic_meter",
}

DEFAULT_PROFILE = "generic"


def _parse_entry(raw: dict[str, Any]) -> RegisterDescriptor:
    """Build RegisterDescriptor from a JSON entry (name, address, count, scale, bank, ...)."""
    try:
        name = raw["name"]
        address = int(raw["address"])
    except KeyError as e:
        raise ValueError(f"Register entry missing field {e.args[0]!r}: {raw!r}") from None
    return RegisterDescriptor(
        name=name,
        address=address,
        count=int(raw.get("count", 1)),
        scale=float(raw.get("scale", 1)),
        bank=raw.get("bank", "holding"),
        word_order=raw.get("word_order", "high_first"),
        data_type=raw.get("data_type"),
        unit=raw.get("unit", ""),
    )


def _split_document(data: Any) -> tuple[list[Any], list[str] | None]:
    """Accept a bare entry list or {"entries"/"fields": [...], "default_set": [...]}."""
    if isinstance(data, list):
        return data, None
    if isinstance(data, dict):
        entries = data.get("entries", data.get("fields"))
        if isinstance(entries, list):
            default_set = data.get("default_set")
            return entries, list(default_set) if default_set is not None else None
    raise ValueError("Register map must be a list of entries or an object with an 'entries' list")


class RegisterMap:
    """
    In-memory map of register names to RegisterDescriptor. Loaded from packaged JSON.
    Supports profile selection (default generic), explicit overrides and files on disk.
    """

    def __init__(
        self,
        profile: str = DEFAULT_PROFILE,
        map_override: list[dict[str, Any]] | None = None,
        default_set: list[str] | None = None,
    ) -> None:
        """
        Load the register map for the given profile, or use map_override (list of entry dicts).
        `default_set` names the registers read when a caller asks for none; it defaults to
        the profile's own default set, or every entry for overrides.
        """
        self._profile = profile.lower()
        self._by_name: dict[str, RegisterDescriptor] = {}

        if map_override is not None:
            self._load_entries(map_override)
            self._default_set = self._check_default_set(default_set)
            logger.debug("RegisterMap loaded from override: %d entries", len(self._by_name))
            return

        resource_name = _PROFILE_RESOURCE.get(self._profile)
        if not resource_name:
            raise ValueError(f"Unknown profile: {profile!r}")

        # e.g. pymeter_modbus.data.generic_meter -> generic_meter.json
        pkg, name = resource_name.rsplit(".", 1)
        json_name = f"{name}.json"
        try:
            with resources.files(pkg).joinpath(json_name).open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise FileNotFoundError(f"Register map resource not found: {pkg}/{json_name}") from None

        entries, packaged_default = _split_document(data)
        self._load_entries(entries)
        self._default_set = self._check_default_set(default_set if default_set is not None else packaged_default)
        logger.debug("RegisterMap loaded for profile %s: %d entries", self._profile, len(self._by_name))

    @classmethod
    def from_file(cls, path: str | Path) -> "RegisterMap":
        """Load a register map from a JSON file on disk (same layout as the packaged profiles)."""
        path = Path(path)
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        entries, default_set = _split_document(data)
        register_map = cls(profile=path.stem, map_override=entries, default_set=default_set)
        logger.info("Loaded register map with %d registers from %s", len(register_map), path)
        return register_map

    def _load_entries(self, entries: Iterable[Any]) -> None:
        for entry in entries:
            if isinstance(entry, RegisterDescriptor):
                descriptor = entry
            elif isinstance(entry, dict):
                descriptor = _parse_entry(entry)
            else:
                continue
            if descriptor.name in self._by_name:
                raise ValueError(f"Duplicate register in map: {descriptor.name}")
            self._by_name[descriptor.name] = descriptor

    def _check_default_set(self, names: list[str] | None) -> list[str]:
        if names is None:
            return list(self._by_name)
        for name in names:
            if name not in self._by_name:
                raise ValueError(f"Default set names unknown register: {name!r}")
        return list(names)

    def lookup(self, name: str) -> RegisterDescriptor:
        """Return RegisterDescriptor for the name; raise UnknownRegisterError if not in map."""
        if name not in self._by_name:
            raise UnknownRegisterError(name)
        return self._by_name[name]

    def resolve(self, registers: Iterable[RegisterDescriptor | str] | None = None) -> list[RegisterDescriptor]:
        """Turn names and/or descriptors into descriptors; None means the default set."""
        if registers is None:
            return [self._by_name[name] for name in self._default_set]
        return [r if isinstance(r, RegisterDescriptor) else self.lookup(r) for r in registers]

    @property
    def default_set(self) -> list[str]:
        return list(self._default_set)

    @property
    def profile(self) -> str:
        return self._profile

    def __len__(self) -> int:
        return len(self._by_name)

    def __iter__(self):
        return iter(self._by_name.values())

    def __contains__(self, name: object) -> bool:
        return name in self._by_name


def get_default_register_map(profile: str = DEFAULT_PROFILE) -> RegisterMap:
    """Load and return the packaged RegisterMap for the given profile (default generic)."""
    return RegisterMap(profile=profile)
