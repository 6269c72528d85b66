"""Python bindings for clamd daemon on TCP or Unix socket.

For details about commands, see man clamd(8).

Usage:
.. code-block:: python

    clamd = Clamd(ClamdTCPSocket("localhost", 3310))
    pong = clamd.ping()
    scan = clamd.scan_path("/my/file.txt")

Commands can also be run one by one on a transport:
.. code-block:: python

    transport = ClamdUnixSocket("/var/run/clamd.sock")
    version = send(transport, Version())

A connection is opened and closed each time you run a command.

NOTE: clamd sessions are yet not implemented.

"""

from .types import ClamdError, ClamdCommunicationError, \
    ClamdUnknownCommandError, ClamdInvalidResponseError, \
    ClamdScanFailureError, CommandFormat, CommandDef, ScanResult, \
    CommandRunDetails, FileSeparator  # noqa
from .commands import Command, Ping, Version, VersionCommands, Stats, \
    Reload, Shutdown, ScanCommand, Scan, ContScan, MultiScan, InStream, \
    CommandOutcome, send, execute  # noqa
from .client import Clamd, ClamdTransport, ClamdTCPSocket, \
    ClamdUnixSocket  # noqa
