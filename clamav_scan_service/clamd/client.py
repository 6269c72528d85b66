"""Client for clamd.

The transport comes in two shapes:
 - ClamdTCPSocket for clamav daemon on the network
 - ClamdUnixSocket for clamav daemon running locally

Once connection is established, the behaviour is the same: every
command opens its own connection, writes the command (and the data
chunks for INSTREAM), reads until clamd closes the connection and
closes the socket.  There is no connection reuse, clamd sessions
(IDSESSION) are not used.

"""
import abc
import logging
import os
import socket
import struct
import threading
import time
import typing as t

from ..events import ClamdAwaitingEvent, ClamdAwaitingStatus
from .commands import DEFAULT_CHUNK_SIZE, \
    ContScan, \
    InStream, \
    MultiScan, \
    Ping, \
    Reload, \
    Scan, \
    Shutdown, \
    Stats, \
    Version, \
    VersionCommands, \
    send
from .types import ClamdCommunicationError, \
    CommandRunDetails, \
    FileSeparator, \
    ScanResult

logger = logging.getLogger(__name__)

DEFAULT_SERVER_PORT = 3310
DEFAULT_CONNECTION_TIMEOUT = 3_000  # milliseconds
DEFAULT_READ_TIMEOUT = 20_000  # milliseconds

# size of a 4-byte unsigned integer in network byte order
chunk_length_format = "!L"


def _millis_to_seconds(millis: int | None) -> float | None:
    # 0 or None disables the timeout
    if not millis or millis <= 0:
        return None
    return millis / 1000


class ClamdTransport(abc.ABC):
    """Abstract transport to the clamd daemon.
    """
    def __init__(self,
                 file_separator: FileSeparator = FileSeparator.LOCAL,
                 connection_timeout_millis: int = DEFAULT_CONNECTION_TIMEOUT,
                 read_timeout_millis: int = DEFAULT_READ_TIMEOUT,
                 buffer_size: int = 1024):
        self.file_separator = file_separator
        self.connection_timeout_millis = connection_timeout_millis
        self.read_timeout_millis = read_timeout_millis
        self.buffer_size = buffer_size

        self._lock = threading.Lock()
        self._last_command_run_details: CommandRunDetails | None = None

    @property
    def last_command_run_details(self) -> CommandRunDetails | None:
        """Details of the most recently completed command exchange.
        """
        with self._lock:
            return self._last_command_run_details

    def to_server_path(self, path: "str | os.PathLike[str]") -> str:
        return self.file_separator.to_server_path(path)

    def is_reachable(self, timeout_millis: int | None = None) -> bool:
        """Check whether a connection to clamd can be established.

        :param timeout_millis: Connect timeout, defaults to the
            configured connection timeout
        :return: True if connected, never raises
        """
        if timeout_millis is None or timeout_millis <= 0:
            timeout_millis = self.connection_timeout_millis
        if not timeout_millis or timeout_millis <= 0:
            # a probe never blocks without bound
            timeout_millis = DEFAULT_CONNECTION_TIMEOUT
        try:
            sock = self._get_connection(_millis_to_seconds(timeout_millis))
        except OSError as e:
            logger.debug("clamd not reachable: %s", e)
            return False
        sock.close()
        return True

    def send_command(self, raw_command: str) -> str:
        """Send a framed command to clamd and wait for the response.

        :param raw_command: Framed command, see Command.raw_command
        :return: Raw response (UTF-8), terminator included
        :raises ClamdCommunicationError: On any I/O failure
        """
        return self._exchange(raw_command, None, 0)

    def send_command_with_stream(self,
                                 raw_command: str,
                                 input_stream: t.IO[bytes],
                                 chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
        """Send a framed command followed by a chunked data stream.

        Each chunk is prefixed by its length as 4-byte unsigned integer
        in network byte order, a zero length chunk marks the end of the
        stream (INSTREAM, see man clamd(8)).

        :param raw_command: Framed command, see Command.raw_command
        :param input_stream: Input stream to send chunked to clamd
        :param chunk_size: Maximum size of a chunk
        :return: Raw response (UTF-8), terminator included
        :raises ClamdCommunicationError: On any I/O failure
        """
        return self._exchange(raw_command, input_stream, chunk_size)

    @abc.abstractmethod
    def _get_connection(self, timeout: float | None) -> socket.socket:
        """Get connection to clamd as socket.

        :param timeout: Connect timeout in seconds
        :return: Socket connected to clamd
        """

    def _exchange(self,
                  raw_command: str,
                  input_stream: t.IO[bytes] | None,
                  chunk_size: int) -> str:
        start = time.monotonic()
        try:
            with self._get_connection(
                    _millis_to_seconds(self.connection_timeout_millis)) as sock:
                sock.settimeout(_millis_to_seconds(self.read_timeout_millis))

                logger.debug("Sending command: %r", raw_command)
                sock.sendall(raw_command.encode())
                if input_stream is not None:
                    self._send_stream(sock, input_stream, chunk_size)

                response = self._recv(sock)
        except OSError as e:
            raise ClamdCommunicationError(
                f"Failed to communicate with clamd: {e}") from e

        elapsed = int((time.monotonic() - start) * 1000)
        details = CommandRunDetails.create(raw_command, response, elapsed)
        with self._lock:
            self._last_command_run_details = details

        return response

    def _send_stream(self,
                     sock: socket.socket,
                     input_stream: t.IO[bytes],
                     chunk_size: int) -> None:
        # send stream of packets
        buf = input_stream.read(chunk_size)
        while buf:
            buflen = len(buf)
            sock.sendall(struct.pack(chunk_length_format, buflen) + buf)
            buf = input_stream.read(chunk_size)

        # send an empty chunk to signal that we are finished
        sock.sendall(struct.pack(chunk_length_format, 0))

    def _recv(self, sock: socket.socket) -> str:
        """Receive response from clamd socket.

        :return: Raw data received (UTF-8)
        """
        # block until the daemon closes the connection
        recd_data = bytearray()
        recd_buf = sock.recv(self.buffer_size)
        while recd_buf:
            recd_data.extend(recd_buf)
            recd_buf = sock.recv(self.buffer_size)

        return recd_data.decode("utf-8", "replace")


class ClamdTCPSocket(ClamdTransport):
    """Transport to clamd daemon over TCP socket.

    This is the recommended (only) option when clamd is running on
    other host in the network.

    When using this option, clamd should be running with 'TCPSocket <port>'
    configuration option in clamd.conf (see man clamd.conf(5)).
    """
    def __init__(self,
                 host: str = "localhost",
                 port: int = DEFAULT_SERVER_PORT,
                 file_separator: FileSeparator = FileSeparator.LOCAL,
                 connection_timeout_millis: int = DEFAULT_CONNECTION_TIMEOUT,
                 read_timeout_millis: int = DEFAULT_READ_TIMEOUT,
                 buffer_size: int = 1024):
        """Create clamd transport for TCP socket.

        :param host: TCP host
        :param port: TCP port
        :param file_separator: Path convention of the clamd host
        :param connection_timeout_millis: Connect timeout, 0 disables it
        :param read_timeout_millis: Read timeout, 0 disables it
        :param buffer_size: Size of the buffer to read from clamd
        """
        super().__init__(file_separator=file_separator,
                         connection_timeout_millis=connection_timeout_millis,
                         read_timeout_millis=read_timeout_millis,
                         buffer_size=buffer_size)
        self.host = host
        self.port = port

    def _get_connection(self, timeout: float | None) -> socket.socket:
        return socket.create_connection((self.host, self.port),
                                        timeout=timeout)

    def __repr__(self):
        return f"ClamdTCPSocket({self.host}:{self.port})"


class ClamdUnixSocket(ClamdTransport):
    """Transport to clamd daemon over UNIX domain socket.

    This is the recommended option when clamd is running on the same host.

    When using this option, clamd should be running with 'LocalSocket <path>'
    configuration option in clamd.conf (see man clamd.conf(5)).
    """
    def __init__(self,
                 socket_path: str,
                 connection_timeout_millis: int = DEFAULT_CONNECTION_TIMEOUT,
                 read_timeout_millis: int = DEFAULT_READ_TIMEOUT,
                 buffer_size: int = 2048):
        super().__init__(file_separator=FileSeparator.LOCAL,
                         connection_timeout_millis=connection_timeout_millis,
                         read_timeout_millis=read_timeout_millis,
                         buffer_size=buffer_size)
        self.socket_path = socket_path

    def _get_connection(self, timeout: float | None) -> socket.socket:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(timeout)
        try:
            sock.connect(self.socket_path)
        except OSError:
            sock.close()
            raise
        return sock

    def __repr__(self):
        return f"ClamdUnixSocket({self.socket_path})"


class Clamd:
    """High level client for clamd daemon.

    Usage:
    .. code-block:: python

        clamd = Clamd(ClamdTCPSocket("localhost", 3310))
        if clamd.ping():
            result = clamd.scan_path("/data/upload")

    """
    def __init__(self, transport: ClamdTransport):
        self.transport = transport

    def ping(self) -> bool:
        """Execute clamd PING command.
        """
        return send(self.transport, Ping())

    def version(self) -> str:
        """Execute clamd VERSION command.
        """
        return send(self.transport, Version())

    def version_commands(self) -> list[str]:
        """Execute clamd VERSIONCOMMANDS command.

        :return: Commands supported by the daemon
        """
        return send(self.transport, VersionCommands())

    def stats(self) -> str:
        """Execute clamd STATS command.
        """
        return send(self.transport, Stats())

    def reload_virus_databases(self) -> None:
        send(self.transport, Reload())

    def shutdown_server(self) -> None:
        send(self.transport, Shutdown())

    def scan_stream(self,
                    input_stream: t.IO[bytes],
                    chunk_size: int = DEFAULT_CHUNK_SIZE) -> ScanResult:
        """Execute clamd INSTREAM command.

        :param input_stream: Input stream to analyze
        :param chunk_size: Size of the chunks sent to clamd, must not
            exceed StreamMaxLength of clamd.conf
        :return: Result of the scanning
        """
        if input_stream is None:
            raise ValueError("An 'input_stream' must not be None")
        if chunk_size <= 0:
            raise ValueError("A 'chunk_size' must be greater than 0")
        return send(self.transport, InStream(input_stream, chunk_size))

    def scan_path(self,
                  path: "str | os.PathLike[str]",
                  continue_scan: bool = False) -> ScanResult:
        """Execute clamd SCAN or CONTSCAN command.

        A full path is required, it is converted to the path
        convention of the clamd host.

        :param path: Path of the file or directory to scan
        :param continue_scan: Don't stop at the first virus found
        :return: Result of the scanning
        """
        if path is None:
            raise ValueError("A 'path' must not be None")
        server_path = self.transport.to_server_path(path)
        if continue_scan:
            return send(self.transport, ContScan(server_path))
        return send(self.transport, Scan(server_path))

    def parallel_scan(self, path: "str | os.PathLike[str]") -> ScanResult:
        """Execute clamd MULTISCAN command.
        """
        if path is None:
            raise ValueError("A 'path' must not be None")
        return send(self.transport,
                    MultiScan(self.transport.to_server_path(path)))

    def scan_paths(self,
                   paths: t.Iterable["str | os.PathLike[str]"],
                   continue_scan: bool = False) -> ScanResult:
        """Scan several paths, one command each, and merge the results.
        """
        result = ScanResult.ok()
        for path in paths:
            result.merge_with(self.scan_path(path, continue_scan))
        return result

    def is_reachable(self, timeout_millis: int | None = None) -> bool:
        return self.transport.is_reachable(timeout_millis)

    def last_command_run_details(self) -> CommandRunDetails | None:
        return self.transport.last_command_run_details

    def wait_for_operational(
            self,
            max_wait_seconds: float,
            listener: t.Callable[[ClamdAwaitingEvent], None] | None = None,
            poll_seconds: float = 3.0) -> bool:
        """Wait until clamd is reachable and answers to PING.

        clamd takes a while to load the virus databases after being
        started, it accepts connections only afterwards.

        :param max_wait_seconds: Maximum time to wait
        :param listener: Notified with the state observed on every poll
        :param poll_seconds: Pause between two polls
        :return: True if clamd is operational, False on timeout
        """
        if max_wait_seconds < 0:
            raise ValueError("A 'max_wait_seconds' must not be negative")

        deadline = time.monotonic() + max_wait_seconds
        while time.monotonic() < deadline:
            if self.is_reachable(1_000):
                if self._is_operational():
                    self._fire(listener, ClamdAwaitingStatus.OPERATIONAL)
                    return True
                self._fire(listener, ClamdAwaitingStatus.REACHABLE)
            else:
                self._fire(listener, ClamdAwaitingStatus.NOT_REACHABLE)

            time.sleep(min(poll_seconds,
                           max(0.0, deadline - time.monotonic())))

        return False

    def _is_operational(self) -> bool:
        try:
            return self.ping()
        except Exception as e:
            logger.debug("clamd not operational yet: %s", e)
            return False

    def _fire(self, listener, status: ClamdAwaitingStatus) -> None:
        if listener is None:
            return
        try:
            listener(ClamdAwaitingEvent(status))
        except Exception:
            logger.exception("Listener failed on %s", status)

    def __repr__(self):
        return f"Clamd({self.transport!r})"
