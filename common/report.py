"""Console reports for ECU commands.

Contains:
- Report ABC: Base class for all reports
- EcuInfoReport: Identification strings
- ObjectListReport: Catalog entries listed by the device
- TableReport / DriverReport: One configuration object
- RealtimeReport: One decoded realtime frame
- RawReport: One raw message
- StatusReport: One-line confirmation
- StreamReport: Frame count and link counters after streaming
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from common.message import Message
from common.models import DriverData, EcuInfo, EcuObjectDefinition, RealtimeDataPoint, TableData


class Report(ABC):
    """Abstract base class for command reports."""

    @abstractmethod
    def print(self) -> None:
        """Print the report to stdout."""
        pass

    @abstractmethod
    def success(self) -> bool:
        """Return True if the report carries a result."""
        pass


def _floats(values: tuple[float, ...]) -> str:
    return "[" + ", ".join(f"{v:.2f}" for v in values) + "]"


@dataclass
class EcuInfoReport(Report):
    info: EcuInfo | None

    def print(self) -> None:
        if self.info is None:
            print("ECU info: NO DATA")
            return
        i = self.info
        print(f"Product:  {i.product_name} ({i.model_name})")
        print(f"Firmware: {i.firmware_version} (definition {i.def_version})")
        print(f"UUID:     {i.uuid}")
        print(f"Hash:     {i.hash}")

    def success(self) -> bool:
        return self.info is not None


@dataclass
class ObjectListReport(Report):
    title: str
    objects: list[EcuObjectDefinition]

    def print(self) -> None:
        print(f"{self.title}: {len(self.objects)}")
        for obj in self.objects:
            category = f" [{obj.category}]" if obj.category else ""
            print(f"  {obj.id:>5}  {obj.object_type.value:<8} {obj.name}{category}")

    def success(self) -> bool:
        return bool(self.objects)


@dataclass
class TableReport(Report):
    object_id: int
    table: TableData | None

    def print(self) -> None:
        t = self.table
        if t is None:
            print(f"Table {self.object_id}: NO DATA")
            return
        state = "enabled" if t.enabled else "disabled"
        print(f"Table: {t.name} (id={t.id}, {t.rows}x{t.cols}, type={t.table_type}, {state})")
        print(f"  X: {_floats(t.x_axis)}")
        if t.y_axis:
            print(f"  Y: {_floats(t.y_axis)}")
        for row in range(max(t.rows, 1)):
            print(f"  {_floats(t.output[row * t.cols : (row + 1) * t.cols])}")

    def success(self) -> bool:
        return self.table is not None


@dataclass
class DriverReport(Report):
    object_id: int
    driver: DriverData | None

    def print(self) -> None:
        d = self.driver
        if d is None:
            print(f"Driver {self.object_id}: NO DATA")
            return
        print(f"Driver: {d.name} (id={d.id})")
        print(f"  Config params: {_floats(d.config_params)}")
        print(f"  Input links:   {list(d.input_link_ids)}")
        print(f"  Output links:  {list(d.output_link_ids)}")

    def success(self) -> bool:
        return self.driver is not None


@dataclass
class RealtimeReport(Report):
    points: list[RealtimeDataPoint]

    def print(self) -> None:
        for p in self.points:
            value = f"{p.value:10.2f}" if isinstance(p.value, float) else f"{p.value!s:>10}"
            print(f"  {p.name:<30} (id={p.id:<5}) {value}")

    def success(self) -> bool:
        return bool(self.points)


@dataclass
class RawReport(Report):
    message: Message | None

    def print(self) -> None:
        print(f"Reply: {self.message}" if self.message is not None else "Reply: NONE")

    def success(self) -> bool:
        return self.message is not None


@dataclass
class StatusReport(Report):
    text: str

    def print(self) -> None:
        print(self.text)

    def success(self) -> bool:
        return True


@dataclass
class StreamReport(Report):
    """Summary after a realtime stream ends."""

    frames: int
    discarded_bytes: int = 0
    checksum_failures: int = 0

    def print(self) -> None:
        print(
            f"Stream: {self.frames} frame(s), {self.discarded_bytes} bytes discarded, "
            f"{self.checksum_failures} bad checksums"
        )

    def success(self) -> bool:
        return self.frames > 0
