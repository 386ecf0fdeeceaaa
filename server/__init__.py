"""Server package for the ECU link: the device simulator.

Contains:
- state: SimulatedEcuState (tables, drivers, realtime signal generators)
- handler: DISPATCH table, process_request, ClientHandler

Note: SimulatorServer and run_server are not exported here so that the
handler can be used without the socket server. Import directly from
server.runner when needed.
"""

from server.handler import DISPATCH, ClientHandler, process_request
from server.state import SimulatedEcuState

__all__ = [
    "SimulatedEcuState",
    "DISPATCH",
    "ClientHandler",
    "process_request",
]
