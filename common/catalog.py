"""Object catalog used to label decoded objects.

Contains:
- CatalogLookup: Protocol for id -> definition lookup
- EcuCatalog: In-memory catalog
- default_catalog: Built-in demo catalog shared by the simulator and CLI
"""

from collections.abc import Iterable, Iterator
from typing import Protocol

from common.models import EcuObjectDefinition, ObjectType


class CatalogLookup(Protocol):
    """Anything that can resolve an object id to its definition."""

    def lookup(self, object_id: int, /) -> EcuObjectDefinition | None: ...


class EcuCatalog:
    """Read-only in-memory catalog, iterated in insertion order."""

    def __init__(self, definitions: Iterable[EcuObjectDefinition] = ()) -> None:
        self._objects: dict[int, EcuObjectDefinition] = {}
        for definition in definitions:
            if definition.id in self._objects:
                raise ValueError(f"Duplicate catalog id {definition.id}")
            self._objects[definition.id] = definition

    def lookup(self, object_id: int, /) -> EcuObjectDefinition | None:
        return self._objects.get(object_id)

    def of_type(self, object_type: ObjectType) -> list[EcuObjectDefinition]:
        return [d for d in self._objects.values() if d.object_type is object_type]

    def find(self, name: str) -> EcuObjectDefinition | None:
        """Case-insensitive lookup by name."""
        wanted = name.casefold()
        for definition in self._objects.values():
            if definition.name.casefold() == wanted:
                return definition
        return None

    def __iter__(self) -> Iterator[EcuObjectDefinition]:
        return iter(self._objects.values())

    def __len__(self) -> int:
        return len(self._objects)

    def __contains__(self, object_id: object) -> bool:
        return object_id in self._objects


_DEMO_TABLES = [
    (1, "Fuel Base", "Fuel"),
    (2, "Ignition Base", "Ignition"),
    (3, "Target Lambda", "Fuel"),
    (4, "Idle Target", "Idle"),
]

_DEMO_DRIVERS = [
    (100, "Idle Control", "Idle"),
    (101, "Boost Control", "Boost"),
    (102, "Fan Control", "Cooling"),
]

_DEMO_DATALINKS = [
    (200, "RPM", "Engine"),
    (201, "MAP", "Engine"),
    (202, "Coolant Temp", "Sensors"),
    (203, "Intake Air Temp", "Sensors"),
    (204, "Throttle Position", "Engine"),
    (205, "Lambda", "Fuel"),
    (206, "Battery Voltage", "Sensors"),
    (207, "Ignition Advance", "Ignition"),
]


def default_catalog() -> EcuCatalog:
    """Build the demo catalog of tables, drivers and datalinks."""
    entries = [
        EcuObjectDefinition(i, name, ObjectType.TABLE, category)
        for i, name, category in _DEMO_TABLES
    ]
    entries += [
        EcuObjectDefinition(i, name, ObjectType.DRIVER, category)
        for i, name, category in _DEMO_DRIVERS
    ]
    entries += [
        EcuObjectDefinition(i, name, ObjectType.DATALINK, category)
        for i, name, category in _DEMO_DATALINKS
    ]
    return EcuCatalog(entries)
