"""Client runner for the ECU link.

Contains run_client() which connects to a device, runs one named command,
prints a report and returns an exit code based on the result.
"""

import logging
from collections.abc import Callable
from enum import IntEnum
from typing import Any

from client.interaction import EcuClient
from common.catalog import CatalogLookup, EcuCatalog, default_catalog
from common.connection import (
    DeviceRejectedError,
    EcuLinkError,
    RequestTimeoutError,
    TransportOpenError,
)
from common.device import open_byte_stream
from common.models import ObjectType
from common.report import (
    DriverReport,
    EcuInfoReport,
    ObjectListReport,
    RawReport,
    RealtimeReport,
    Report,
    StatusReport,
    StreamReport,
    TableReport,
)
from common.session import StreamOpener, TransportSession

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    """Exit codes for client operations."""

    SUCCESS = 0  # Command completed and returned data
    CONNECT_FAILED = 1  # Stream could not be opened or the link dropped
    NO_DATA = 2  # Device answered but the object is missing or malformed
    REJECTED = 3  # Device returned a non-zero status
    TIMEOUT = 4  # No reply before the deadline
    USAGE = 5  # Unknown command or bad arguments


Params = dict[str, Any]
CommandFn = Callable[[EcuClient, Params, dict[str, float]], Report]


def _info(client: EcuClient, params: Params, timeout: dict[str, float]) -> Report:
    return EcuInfoReport(client.get_ecu_info(**timeout))


def _objects(client: EcuClient, params: Params, timeout: dict[str, float]) -> Report:
    return ObjectListReport("Objects", client.get_object_list(**timeout))


def _datalinks(client: EcuClient, params: Params, timeout: dict[str, float]) -> Report:
    return ObjectListReport("Datalinks", client.get_datalink_list(**timeout))


def _table(client: EcuClient, params: Params, timeout: dict[str, float]) -> Report:
    return TableReport(params["id"], client.get_table(params["id"], **timeout))


def _driver(client: EcuClient, params: Params, timeout: dict[str, float]) -> Report:
    return DriverReport(params["id"], client.get_driver(params["id"], **timeout))


def _set_table_cell(client: EcuClient, params: Params, timeout: dict[str, float]) -> Report:
    table = client.get_table(params["id"], **timeout)
    if table is None:
        return TableReport(params["id"], None)
    updated = table.with_cell(params.get("row", 0), params["col"], params["value"])
    client.update_table(updated, **timeout)
    print(f"Updated table {table.id} cell ({params.get('row', 0)}, {params['col']})")
    return TableReport(table.id, updated)


def _set_driver_param(client: EcuClient, params: Params, timeout: dict[str, float]) -> Report:
    driver = client.get_driver(params["id"], **timeout)
    if driver is None:
        return DriverReport(params["id"], None)
    updated = driver.with_param(params["index"], params["value"])
    client.update_driver(updated, **timeout)
    print(f"Updated driver {driver.id} param {params['index']}")
    return DriverReport(driver.id, updated)


def _store_table(client: EcuClient, params: Params, timeout: dict[str, float]) -> Report:
    client.store_table(params["id"], **timeout)
    return StatusReport(f"Stored table {params['id']}")


def _store_driver(client: EcuClient, params: Params, timeout: dict[str, float]) -> Report:
    client.store_driver(params["id"], **timeout)
    return StatusReport(f"Stored driver {params['id']}")


def _stream(client: EcuClient, params: Params, timeout: dict[str, float]) -> Report:
    frames = params.get("frames", 0)
    count = 0
    with client.stream_realtime(**timeout) as stream:
        for points in stream:
            count += 1
            print(f"--- frame {count} ---")
            RealtimeReport(points).print()
            if frames and count >= frames:
                break
    stats = client.session.stats()
    return StreamReport(count, stats.discarded_bytes, stats.checksum_failures)


def _value(client: EcuClient, params: Params, timeout: dict[str, float]) -> Report:
    point = client.get_realtime_value(params["id"], **timeout)
    return RealtimeReport([point] if point is not None else [])


def _raw(client: EcuClient, params: Params, timeout: dict[str, float]) -> Report:
    reply = client.send_raw(
        params["type"], params["class"], params["command"], params.get("payload", b""), **timeout
    )
    return RawReport(reply)


COMMANDS: dict[str, CommandFn] = {
    "info": _info,
    "objects": _objects,
    "datalinks": _datalinks,
    "table": _table,
    "driver": _driver,
    "set-table-cell": _set_table_cell,
    "set-driver-param": _set_driver_param,
    "store-table": _store_table,
    "store-driver": _store_driver,
    "stream": _stream,
    "value": _value,
    "raw": _raw,
}


def resolve_object_id(catalog: EcuCatalog, value: str, object_type: ObjectType) -> int:
    """Accept a numeric id or the catalog name of an object of the given type."""
    if value.isdigit():
        return int(value)
    definition = catalog.find(value)
    if definition is None or definition.object_type is not object_type:
        raise ValueError(f"No {object_type.value} named {value!r}")
    return definition.id


def run_client(
    device: str,
    baudrate: int,
    command: str,
    params: Params | None = None,
    timeout_s: float | None = None,
    catalog: CatalogLookup | None = None,
    opener: StreamOpener = open_byte_stream,
) -> int:
    """Run client: connect, run one command, print its report. Returns exit code.

    timeout_s overrides the command's default deadline when given.
    """
    fn = COMMANDS.get(command)
    if fn is None:
        logger.error(f"Unknown command {command!r}")
        return ExitCode.USAGE

    session = TransportSession(opener)
    try:
        session.connect(device, baudrate)
    except TransportOpenError as e:
        logger.error(f"Failed to open {device}: {e}")
        return ExitCode.CONNECT_FAILED

    client = EcuClient(session, catalog if catalog is not None else default_catalog())
    timeout = {"timeout_s": timeout_s} if timeout_s is not None else {}
    try:
        report = fn(client, params or {}, timeout)
        report.print()
        return ExitCode.SUCCESS if report.success() else ExitCode.NO_DATA
    except DeviceRejectedError as e:
        print(f"Rejected: {e}")
        return ExitCode.REJECTED
    except RequestTimeoutError as e:
        print(f"Timeout: {e}")
        return ExitCode.TIMEOUT
    except EcuLinkError as e:
        logger.error(f"Link failure: {e}")
        return ExitCode.CONNECT_FAILED
    except (IndexError, KeyError, ValueError) as e:
        logger.error(f"Bad arguments for {command}: {e}")
        return ExitCode.USAGE
    finally:
        session.close()
        logger.info(f"Closed {device}")
