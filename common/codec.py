"""Binary codec for ECU objects carried in message payloads.

Pure functions, no I/O. Parsers never raise on short or inconsistent input:
they return None (single objects) or an empty/partial list (collections).

Layouts (little-endian):
  set table:    id:u16 size:u16 [type:u8 enabled:u8 rows:u8 cols:u8
                 y_axis:f32[rows] if rows > 1, x_axis:f32[cols], output:f32[rows*cols]]
  set driver:   id:u16 size:u16 [n_configs:u8 n_outputs:u8 n_inputs:u8
                 configs:f32[n] outputs:u16[n] inputs:u16[n]]
  get response: status:u8 followed by the matching set layout
  ecu info:     status:u8 then six NUL-separated ASCII strings
  object list:  status:u8 reserved:3 count:u16 then count x (id:u16 reserved:2)
  reporting:    status:u8 count:u16 then count x (id:u16 type:u8)
  realtime:     status:u8 then one value per reporting map entry, in map order
"""

import logging
import struct
from collections.abc import Iterable, Mapping, Sequence

from common.catalog import CatalogLookup
from common.message import uint16_from_bytes, uint16_to_bytes
from common.models import (
    DriverData,
    EcuInfo,
    EcuObjectDefinition,
    ObjectType,
    RealtimeDataPoint,
    ReportingMapEntry,
    TableData,
    fallback_name,
)
from common.protocol import STATUS_OK, DataType

logger = logging.getLogger(__name__)

F32 = struct.Struct("<f")
U16 = struct.Struct("<H")
ID_SIZE_HEADER = struct.Struct("<HH")
TABLE_HEADER = struct.Struct("<BBBB")
DRIVER_HEADER = struct.Struct("<BBB")
MAP_ENTRY = struct.Struct("<HB")

ECU_INFO_FIELDS = 6
OBJECT_LIST_COUNT_OFFSET = 4
OBJECT_LIST_ENTRY_SIZE = 4

# Integer ranges used when packing synthetic float values into narrow types
_INT_RANGES = {
    DataType.INT16: (-0x8000, 0x7FFF),
    DataType.UINT16: (0, 0xFFFF),
    DataType.INT8: (-0x80, 0x7F),
    DataType.UINT8: (0, 0xFF),
}


def _name_for(
    catalog: CatalogLookup | None, object_id: int, object_type: ObjectType
) -> str:
    definition = catalog.lookup(object_id) if catalog is not None else None
    if definition is not None:
        return definition.name
    return fallback_name(object_type, object_id)


def _pack_floats(values: Iterable[float]) -> bytes:
    return b"".join(F32.pack(v) for v in values)


def _unpack_floats(data: bytes, offset: int, count: int) -> tuple[float, ...]:
    return struct.unpack_from(f"<{count}f", data, offset)


def _unpack_u16s(data: bytes, offset: int, count: int) -> tuple[int, ...]:
    return struct.unpack_from(f"<{count}H", data, offset)


def build_id_payload(object_id: int) -> bytes:
    """Payload of get/store requests: the object id as u16."""
    return uint16_to_bytes(object_id)


def parse_id_payload(payload: bytes) -> int | None:
    if len(payload) < U16.size:
        return None
    return uint16_from_bytes(payload[: U16.size])


def response_status(payload: bytes) -> int | None:
    """First payload byte of a response, or None for an empty payload."""
    return payload[0] if payload else None


# --- Tables ---


def build_set_table_payload(table: TableData) -> bytes:
    body = TABLE_HEADER.pack(table.table_type, int(table.enabled), table.rows, table.cols)
    if table.rows > 1:
        body += _pack_floats(table.y_axis)
    body += _pack_floats(table.x_axis)
    body += _pack_floats(table.output)
    return ID_SIZE_HEADER.pack(table.id, len(body)) + body


def parse_set_table_payload(
    payload: bytes, catalog: CatalogLookup | None = None
) -> TableData | None:
    if len(payload) < ID_SIZE_HEADER.size:
        return None
    table_id, size = ID_SIZE_HEADER.unpack_from(payload)
    if len(payload) < ID_SIZE_HEADER.size + size or size < TABLE_HEADER.size:
        return None

    offset = ID_SIZE_HEADER.size
    end = offset + size
    table_type, enabled, rows, cols = TABLE_HEADER.unpack_from(payload, offset)
    offset += TABLE_HEADER.size

    y_count = rows if rows > 1 else 0
    needed = (y_count + cols + rows * cols) * F32.size
    if offset + needed > end:
        logger.debug(f"Table {table_id}: {rows}x{cols} does not fit in {size} bytes")
        return None

    y_axis = _unpack_floats(payload, offset, y_count)
    offset += y_count * F32.size
    x_axis = _unpack_floats(payload, offset, cols)
    offset += cols * F32.size
    output = _unpack_floats(payload, offset, rows * cols)

    return TableData(
        id=table_id,
        name=_name_for(catalog, table_id, ObjectType.TABLE),
        table_type=table_type,
        enabled=enabled == 1,
        rows=rows,
        cols=cols,
        x_axis=x_axis,
        y_axis=y_axis,
        output=output,
    )


def build_get_table_response(table: TableData) -> bytes:
    return bytes([STATUS_OK]) + build_set_table_payload(table)


def parse_table_response(
    payload: bytes, catalog: CatalogLookup | None = None
) -> TableData | None:
    """Decode a get-table reply: status byte then the set-table layout."""
    if not payload or payload[0] != STATUS_OK:
        return None
    return parse_set_table_payload(payload[1:], catalog)


# --- Drivers ---


def build_set_driver_payload(driver: DriverData) -> bytes:
    body = DRIVER_HEADER.pack(
        len(driver.config_params), len(driver.output_link_ids), len(driver.input_link_ids)
    )
    body += _pack_floats(driver.config_params)
    body += b"".join(U16.pack(i) for i in driver.output_link_ids)
    body += b"".join(U16.pack(i) for i in driver.input_link_ids)
    return ID_SIZE_HEADER.pack(driver.id, len(body)) + body


def parse_set_driver_payload(
    payload: bytes, catalog: CatalogLookup | None = None
) -> DriverData | None:
    if len(payload) < ID_SIZE_HEADER.size:
        return None
    driver_id, size = ID_SIZE_HEADER.unpack_from(payload)
    if len(payload) < ID_SIZE_HEADER.size + size or size < DRIVER_HEADER.size:
        return None

    offset = ID_SIZE_HEADER.size
    end = offset + size
    num_configs, num_outputs, num_inputs = DRIVER_HEADER.unpack_from(payload, offset)
    offset += DRIVER_HEADER.size

    needed = num_configs * F32.size + (num_outputs + num_inputs) * U16.size
    if offset + needed > end:
        logger.debug(f"Driver {driver_id}: arrays do not fit in {size} bytes")
        return None

    config_params = _unpack_floats(payload, offset, num_configs)
    offset += num_configs * F32.size
    output_ids = _unpack_u16s(payload, offset, num_outputs)
    offset += num_outputs * U16.size
    input_ids = _unpack_u16s(payload, offset, num_inputs)

    return DriverData(
        id=driver_id,
        name=_name_for(catalog, driver_id, ObjectType.DRIVER),
        config_params=config_params,
        input_link_ids=input_ids,
        output_link_ids=output_ids,
    )


def build_get_driver_response(driver: DriverData) -> bytes:
    return bytes([STATUS_OK]) + build_set_driver_payload(driver)


def parse_driver_response(
    payload: bytes, catalog: CatalogLookup | None = None
) -> DriverData | None:
    """Decode a get-driver reply: status byte then the set-driver layout."""
    if not payload or payload[0] != STATUS_OK:
        return None
    return parse_set_driver_payload(payload[1:], catalog)


# --- ECU info and object list ---


def build_ecu_info_payload(info: EcuInfo) -> bytes:
    text = "\0".join(info.fields()) + "\0"
    return bytes([STATUS_OK]) + text.encode("ascii")


def parse_ecu_info(payload: bytes) -> EcuInfo | None:
    """Skip the status byte and split the rest on NUL into six fields."""
    if len(payload) <= 1:
        return None
    parts = payload[1:].decode("ascii", errors="replace").split("\0")
    if len(parts) < ECU_INFO_FIELDS:
        logger.debug(f"ECU info has {len(parts)} fields, expected {ECU_INFO_FIELDS}")
        return None
    return EcuInfo(*parts[:ECU_INFO_FIELDS])


def build_object_list_payload(object_ids: Sequence[int]) -> bytes:
    out = bytearray([STATUS_OK, 0, 0, 0])
    out += uint16_to_bytes(len(object_ids))
    for object_id in object_ids:
        out += uint16_to_bytes(object_id) + b"\x00\x00"
    return bytes(out)


def parse_object_list(payload: bytes, catalog: CatalogLookup) -> list[EcuObjectDefinition]:
    """Resolve listed ids against the catalog; unknown ids are omitted."""
    offset = OBJECT_LIST_COUNT_OFFSET + U16.size
    if len(payload) < offset:
        return []
    count = uint16_from_bytes(payload[OBJECT_LIST_COUNT_OFFSET:offset])

    objects: list[EcuObjectDefinition] = []
    for _ in range(count):
        if offset + OBJECT_LIST_ENTRY_SIZE > len(payload):
            break
        object_id = uint16_from_bytes(payload[offset : offset + U16.size])
        definition = catalog.lookup(object_id)
        if definition is not None:
            objects.append(definition)
        else:
            logger.debug(f"Object {object_id} not in catalog, skipping")
        offset += OBJECT_LIST_ENTRY_SIZE
    return objects


# --- Realtime reporting ---


def build_set_state_response(reporting_map: Sequence[ReportingMapEntry]) -> bytes:
    out = bytearray([STATUS_OK])
    out += uint16_to_bytes(len(reporting_map))
    for entry in reporting_map:
        out += MAP_ENTRY.pack(entry.id, entry.type_code)
    return bytes(out)


def parse_set_state_response(payload: bytes) -> list[ReportingMapEntry]:
    """Decode the reporting map; a malformed or short payload yields []."""
    if len(payload) < 3 or payload[0] != STATUS_OK:
        return []
    count = uint16_from_bytes(payload[1:3])
    if len(payload) < 3 + count * MAP_ENTRY.size:
        return []
    return [
        ReportingMapEntry(*MAP_ENTRY.unpack_from(payload, 3 + i * MAP_ENTRY.size))
        for i in range(count)
    ]


def _data_type(type_code: int) -> DataType | None:
    try:
        return DataType(type_code)
    except ValueError:
        return None


def _pack_value(data_type: DataType, value: float) -> bytes:
    if data_type is DataType.FLOAT32:
        return F32.pack(value)
    if data_type is DataType.BOOL:
        return bytes([1 if value else 0])
    low, high = _INT_RANGES[data_type]
    return struct.pack(data_type.struct_format, min(max(int(value), low), high))


def build_realtime_payload(
    values: Mapping[int, float], reporting_map: Sequence[ReportingMapEntry]
) -> bytes:
    """Encode values in reporting-map order; ids without a value are skipped."""
    out = bytearray([STATUS_OK])
    for entry in reporting_map:
        data_type = _data_type(entry.type_code)
        if entry.id not in values or data_type is None:
            continue
        out += _pack_value(data_type, values[entry.id])
    return bytes(out)


def parse_realtime_data(
    payload: bytes,
    reporting_map: Sequence[ReportingMapEntry],
    catalog: CatalogLookup | None = None,
) -> list[RealtimeDataPoint]:
    """Decode one realtime frame by walking the reporting map in order.

    Stops early when the remaining bytes cannot hold the next value. An
    unknown type code occupies no bytes and decodes as 0.
    """
    points: list[RealtimeDataPoint] = []
    if not payload or payload[0] != STATUS_OK:
        return points

    offset = 1
    for entry in reporting_map:
        data_type = _data_type(entry.type_code)
        value: float | int | bool
        if data_type is None:
            value = 0
        else:
            if offset + data_type.size > len(payload):
                break
            (value,) = struct.unpack_from(data_type.struct_format, payload, offset)
            if data_type is DataType.BOOL:
                value = value != 0
            offset += data_type.size
        points.append(
            RealtimeDataPoint(entry.id, _name_for(catalog, entry.id, ObjectType.DATALINK), value)
        )
    return points
