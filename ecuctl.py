#!/usr/bin/env python3
"""ECU link command-line tool: talk to a device or run the simulator."""

import argparse
import logging
import sys

from client.runner import ExitCode, resolve_object_id, run_client
from common.catalog import default_catalog
from common.models import ObjectType
from common.protocol import (
    DEFAULT_BAUDRATE,
    DEFAULT_LOG_LEVEL,
    DEFAULT_SIM_HOST,
    DEFAULT_SIM_PORT,
    TRACE,
)
from server.runner import run_server

logger = logging.getLogger(__name__)

DEFAULT_DEVICE = f"tcp://{DEFAULT_SIM_HOST}:{DEFAULT_SIM_PORT}"

_VERBOSITY = [logging.WARNING, logging.INFO, logging.DEBUG, TRACE]


def configure_logging(verbose: int) -> None:
    """-v flags win over ECU_LOG_LEVEL; only this entry point configures logging."""
    if verbose:
        level: int | str = _VERBOSITY[min(verbose, len(_VERBOSITY) - 1)]
    else:
        level = DEFAULT_LOG_LEVEL.upper()
    logging.basicConfig(
        level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


def parse_int(value: str) -> int:
    """Decimal or 0x-prefixed integer."""
    return int(value, 0)


def parse_hex(value: str) -> bytes:
    """Hex payload such as "01 02" or "0102"."""
    try:
        return bytes.fromhex(value.replace(":", " "))
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid hex payload: {value!r}") from e


def _add_object_arg(parser: argparse.ArgumentParser, kind: str) -> None:
    parser.add_argument("object", help=f"{kind} id or catalog name")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Talk to an ME221-style ECU or run the device simulator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s simulate                          Run the simulator on TCP 127.0.0.1:54321
  %(prog)s simulate --serial /dev/pts/3      Serve the simulator on a serial device
  %(prog)s info                              Read ECU info from the simulator
  %(prog)s -d /dev/ttyACM0 objects           List tables and drivers over serial
  %(prog)s -d usb:0483:5740 stream -n 10     Print 10 realtime frames over USB
  %(prog)s set-table-cell "Fuel Base" 3 42.5 Update one cell of a 1-D table
  %(prog)s raw 0x04 0x00                     Send a raw request
""",
    )
    parser.add_argument(
        "-d",
        "--device",
        default=DEFAULT_DEVICE,
        help=f"Stream name: serial path, host:port, tcp://host:port or usb:VID:PID "
        f"(default: {DEFAULT_DEVICE})",
    )
    parser.add_argument(
        "-b",
        "--baudrate",
        type=int,
        default=DEFAULT_BAUDRATE,
        help=f"Baud rate for serial devices (default: {DEFAULT_BAUDRATE})",
    )
    parser.add_argument(
        "-t",
        "--timeout",
        type=float,
        default=None,
        help="Override the command's reply timeout in seconds",
    )
    parser.add_argument(
        "-v", "--verbose", action="count", default=0, help="More logging (-v, -vv, -vvv)"
    )

    sub = parser.add_subparsers(dest="command")

    sim = sub.add_parser("simulate", help="Run the device simulator")
    sim.add_argument("--host", default=DEFAULT_SIM_HOST, help=f"Listen host (default: {DEFAULT_SIM_HOST})")
    sim.add_argument("--port", type=int, default=DEFAULT_SIM_PORT, help=f"Listen port (default: {DEFAULT_SIM_PORT})")
    sim.add_argument("--serial", default=None, help="Serve on this serial device instead of TCP")

    sub.add_parser("info", help="Read ECU identification")
    sub.add_parser("objects", help="List tables and drivers")
    sub.add_parser("datalinks", help="List realtime datalinks")

    p = sub.add_parser("table", help="Read a table")
    _add_object_arg(p, "Table")
    p = sub.add_parser("driver", help="Read a driver")
    _add_object_arg(p, "Driver")

    p = sub.add_parser("set-table-cell", help="Change one table output cell")
    _add_object_arg(p, "Table")
    p.add_argument("col", type=int, help="Column index")
    p.add_argument("value", type=float, help="New value")
    p.add_argument("--row", type=int, default=0, help="Row index (default: 0)")

    p = sub.add_parser("set-driver-param", help="Change one driver config parameter")
    _add_object_arg(p, "Driver")
    p.add_argument("index", type=int, help="Parameter index")
    p.add_argument("value", type=float, help="New value")

    p = sub.add_parser("store-table", help="Persist a table to flash")
    _add_object_arg(p, "Table")
    p = sub.add_parser("store-driver", help="Persist a driver to flash")
    _add_object_arg(p, "Driver")

    p = sub.add_parser("stream", help="Print realtime frames (Ctrl-C to stop)")
    p.add_argument("-n", "--frames", type=int, default=0, help="Stop after N frames (default: 0 = until Ctrl-C)")

    p = sub.add_parser("value", help="Read one realtime datalink")
    _add_object_arg(p, "DataLink")

    p = sub.add_parser("raw", help="Send a raw message and print the reply")
    p.add_argument("msg_class", type=parse_int, help="Class byte")
    p.add_argument("msg_command", type=parse_int, help="Command byte")
    p.add_argument("payload", nargs="?", type=parse_hex, default=b"", help="Hex payload")
    p.add_argument("--type", dest="msg_type", type=parse_int, default=0x00, help="Type byte (default: 0x00)")

    return parser


_OBJECT_TYPES = {
    "table": ObjectType.TABLE,
    "set-table-cell": ObjectType.TABLE,
    "store-table": ObjectType.TABLE,
    "driver": ObjectType.DRIVER,
    "set-driver-param": ObjectType.DRIVER,
    "store-driver": ObjectType.DRIVER,
    "value": ObjectType.DATALINK,
}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if args.command is None:
        parser.print_help()
        return ExitCode.USAGE

    catalog = default_catalog()

    if args.command == "simulate":
        return run_server(args.host, args.port, args.serial, args.baudrate, catalog)

    params: dict[str, object] = {}
    if args.command in _OBJECT_TYPES:
        try:
            params["id"] = resolve_object_id(catalog, args.object, _OBJECT_TYPES[args.command])
        except ValueError as e:
            logger.error(str(e))
            return ExitCode.USAGE
    if args.command == "set-table-cell":
        params.update(row=args.row, col=args.col, value=args.value)
    elif args.command == "set-driver-param":
        params.update(index=args.index, value=args.value)
    elif args.command == "stream":
        params["frames"] = args.frames
    elif args.command == "raw":
        params.update(
            type=args.msg_type, command=args.msg_command, payload=args.payload
        )
        params["class"] = args.msg_class

    try:
        return run_client(args.device, args.baudrate, args.command, params, args.timeout, catalog)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return ExitCode.SUCCESS


if __name__ == "__main__":
    sys.exit(main())
