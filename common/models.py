"""ECU domain value objects.

Contains:
- ObjectType: Enum for catalog object kinds (table, driver, datalink)
- EcuObjectDefinition: Catalog entry used to label decoded objects
- EcuInfo: Identification strings reported by the device
- TableData: Lookup table with axes and output grid
- DriverData: Parametrized algorithm block with its link ids
- ReportingMapEntry: One (id, type code) pair from the enable-reporting reply
- RealtimeDataPoint: One decoded realtime value
"""

from dataclasses import dataclass, field
from enum import Enum

MAX_U8 = 0xFF
MAX_U16 = 0xFFFF


class ObjectType(Enum):
    """Kind of object exposed by the device."""

    TABLE = "Table"
    DRIVER = "Driver"
    DATALINK = "DataLink"


def fallback_name(object_type: ObjectType, object_id: int) -> str:
    """Label for an object the catalog does not know, e.g. "Table_12"."""
    return f"{object_type.value}_{object_id}"


def _check_u16(name: str, value: int) -> None:
    if not 0 <= value <= MAX_U16:
        raise ValueError(f"{name} must be a u16, got {value}")


@dataclass(frozen=True)
class EcuObjectDefinition:
    """Catalog entry: id, human name and object kind."""

    id: int
    name: str
    object_type: ObjectType
    category: str = ""


@dataclass(frozen=True)
class EcuInfo:
    """Identification strings reported by the device."""

    product_name: str
    model_name: str
    def_version: str
    firmware_version: str
    uuid: str
    hash: str

    def fields(self) -> tuple[str, str, str, str, str, str]:
        return (
            self.product_name,
            self.model_name,
            self.def_version,
            self.firmware_version,
            self.uuid,
            self.hash,
        )


@dataclass(frozen=True)
class TableData:
    """Lookup table.

    A 1-D table has rows <= 1 and an empty y_axis. The output grid is stored
    row-major with rows * cols entries.
    """

    id: int
    name: str
    table_type: int
    enabled: bool
    rows: int
    cols: int
    x_axis: tuple[float, ...]
    y_axis: tuple[float, ...]
    output: tuple[float, ...]

    def __post_init__(self) -> None:
        _check_u16("id", self.id)
        for name in ("table_type", "rows", "cols"):
            value = getattr(self, name)
            if not 0 <= value <= MAX_U8:
                raise ValueError(f"{name} must be a u8, got {value}")
        object.__setattr__(self, "x_axis", tuple(self.x_axis))
        object.__setattr__(self, "y_axis", tuple(self.y_axis))
        object.__setattr__(self, "output", tuple(self.output))
        if len(self.x_axis) != self.cols:
            raise ValueError(f"x_axis has {len(self.x_axis)} values, expected {self.cols}")
        expected_y = self.rows if self.rows > 1 else 0
        if len(self.y_axis) != expected_y:
            raise ValueError(f"y_axis has {len(self.y_axis)} values, expected {expected_y}")
        if len(self.output) != self.rows * self.cols:
            raise ValueError(
                f"output has {len(self.output)} values, expected {self.rows * self.cols}"
            )

    def cell(self, row: int, col: int) -> float:
        return self.output[row * self.cols + col]

    def with_cell(self, row: int, col: int, value: float) -> "TableData":
        """Return a copy with one output cell replaced."""
        if not (0 <= row < max(self.rows, 1) and 0 <= col < self.cols):
            raise IndexError(f"cell ({row}, {col}) outside {self.rows}x{self.cols} table")
        output = list(self.output)
        output[row * self.cols + col] = value
        return TableData(
            self.id,
            self.name,
            self.table_type,
            self.enabled,
            self.rows,
            self.cols,
            self.x_axis,
            self.y_axis,
            tuple(output),
        )


@dataclass(frozen=True)
class DriverData:
    """Parametrized algorithm block; each array holds at most 255 entries."""

    id: int
    name: str
    config_params: tuple[float, ...] = field(default_factory=tuple)
    input_link_ids: tuple[int, ...] = field(default_factory=tuple)
    output_link_ids: tuple[int, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        _check_u16("id", self.id)
        for name in ("config_params", "input_link_ids", "output_link_ids"):
            values = tuple(getattr(self, name))
            if len(values) > MAX_U8:
                raise ValueError(f"{name} holds {len(values)} entries, max {MAX_U8}")
            object.__setattr__(self, name, values)
        for link_id in self.input_link_ids + self.output_link_ids:
            _check_u16("link id", link_id)

    def with_param(self, index: int, value: float) -> "DriverData":
        """Return a copy with one config parameter replaced."""
        params = list(self.config_params)
        params[index] = value
        return DriverData(
            self.id, self.name, tuple(params), self.input_link_ids, self.output_link_ids
        )


@dataclass(frozen=True)
class ReportingMapEntry:
    """One realtime item the device will report: id and wire type code."""

    id: int
    type_code: int


@dataclass(frozen=True)
class RealtimeDataPoint:
    """One decoded realtime value."""

    id: int
    name: str
    value: float | int | bool
