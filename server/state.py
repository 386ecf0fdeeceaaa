"""Synthetic device state for the ECU simulator.

Contains:
- SimulatedEcuState: Tables, drivers and realtime signal generators seeded
  from a catalog, shared by every connected client
"""

import logging
import math
import threading
import uuid

from common.catalog import EcuCatalog
from common.models import (
    DriverData,
    EcuInfo,
    EcuObjectDefinition,
    ObjectType,
    ReportingMapEntry,
    TableData,
)
from common.protocol import DataType

logger = logging.getLogger(__name__)

TABLE_COLS = 16
DRIVER_PARAMS = 8
DRIVER_INPUTS = (1, 2, 3, 4)
DRIVER_OUTPUTS = (10, 11, 12, 13)

PHASE_STEP = 0.05
PHASE_OFFSET = 0.2
RPM_CHANNEL = "RPM"
RPM_IDLE = 800.0
RPM_SPAN = 6000.0


def default_table(definition: EcuObjectDefinition) -> TableData:
    """1x16 table: x axis 0..7500 in steps of 500, half-sine output 0..100."""
    x_axis = tuple(float(i * 500) for i in range(TABLE_COLS))
    output = tuple(math.sin(i / 15.0 * math.pi) * 50 + 50 for i in range(TABLE_COLS))
    return TableData(definition.id, definition.name, 0, True, 1, TABLE_COLS, x_axis, (), output)


def default_driver(definition: EcuObjectDefinition) -> DriverData:
    params = tuple(i * 1.5 for i in range(DRIVER_PARAMS))
    return DriverData(definition.id, definition.name, params, DRIVER_INPUTS, DRIVER_OUTPUTS)


def channel_value(index: int, name: str, angle: float) -> float:
    """Synthetic value of the index-th realtime channel at the given phase angle."""
    if name == RPM_CHANNEL:
        return RPM_IDLE + RPM_SPAN * (0.5 + 0.5 * math.sin(angle))
    amplitude = 50 + (index % 5) * 20
    return math.sin(angle + index * PHASE_OFFSET) * amplitude + amplitude


class SimulatedEcuState:
    """Device state shared by all simulator connections."""

    def __init__(self, catalog: EcuCatalog, ecu_info: EcuInfo | None = None) -> None:
        self._catalog = catalog
        self._lock = threading.Lock()
        self._angle = 0.0
        self._ecu_info = ecu_info or EcuInfo(
            "ME221-SIM", "PnP", "SIM-1.0", "SIM-FW-1.0", str(uuid.uuid4()), "0000"
        )
        self._tables: dict[int, TableData] = {}
        self._drivers: dict[int, DriverData] = {}
        self._realtime: dict[int, float] = {}
        self._datalinks: list[EcuObjectDefinition] = []

        for definition in catalog:
            if definition.object_type is ObjectType.TABLE:
                self._tables[definition.id] = default_table(definition)
            elif definition.object_type is ObjectType.DRIVER:
                self._drivers[definition.id] = default_driver(definition)
            elif definition.object_type is ObjectType.DATALINK:
                self._realtime[definition.id] = 0.0
                self._datalinks.append(definition)

        logger.debug(
            f"Simulated state: {len(self._tables)} tables, {len(self._drivers)} drivers, "
            f"{len(self._realtime)} datalinks"
        )

    @property
    def catalog(self) -> EcuCatalog:
        return self._catalog

    @property
    def angle(self) -> float:
        return self._angle

    def ecu_info(self) -> EcuInfo:
        return self._ecu_info

    def object_list(self) -> list[EcuObjectDefinition]:
        """Tables and drivers, in catalog order."""
        return [
            d
            for d in self._catalog
            if d.object_type in (ObjectType.TABLE, ObjectType.DRIVER)
        ]

    def datalink_list(self) -> list[EcuObjectDefinition]:
        return list(self._datalinks)

    def reporting_map(self) -> list[ReportingMapEntry]:
        """Every datalink, with a type code cycling through all data types by id."""
        return [ReportingMapEntry(d.id, d.id % len(DataType)) for d in self._datalinks]

    def get_table(self, table_id: int) -> TableData | None:
        with self._lock:
            return self._tables.get(table_id)

    def get_driver(self, driver_id: int) -> DriverData | None:
        with self._lock:
            return self._drivers.get(driver_id)

    def update_table(self, table: TableData) -> None:
        with self._lock:
            self._tables[table.id] = table
        logger.info(f"Table {table.id} updated")

    def update_driver(self, driver: DriverData) -> None:
        with self._lock:
            self._drivers[driver.id] = driver
        logger.info(f"Driver {driver.id} updated")

    def realtime_values(self) -> dict[int, float]:
        with self._lock:
            return dict(self._realtime)

    def advance(self) -> dict[int, float]:
        """Step the phase angle and recompute every channel. Returns the new values."""
        with self._lock:
            self._angle += PHASE_STEP
            if self._angle > 2 * math.pi:
                self._angle = 0.0
            for index, definition in enumerate(self._datalinks):
                self._realtime[definition.id] = channel_value(
                    index, definition.name, self._angle
                )
            return dict(self._realtime)
