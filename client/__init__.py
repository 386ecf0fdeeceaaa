"""Client package for the ECU link.

Contains the client-side command layer:
- interaction: EcuClient, RealtimeStream

Note: run_client and ExitCode are not exported here to keep this package
importable without pulling in the CLI reports. Import directly from
client.runner when needed.
"""

from client.interaction import EcuClient, RealtimeStream

__all__ = [
    "EcuClient",
    "RealtimeStream",
]
