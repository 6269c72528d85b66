"""Commands of the clamd protocol.

Every command knows how to frame itself for the wire and how to parse
the raw response clamd sends back.  The module level ``send`` runs a
command on a transport:

.. code-block:: python

    transport = ClamdTCPSocket("localhost", 3310)
    alive = send(transport, Ping())
    result = send(transport, InStream(open("/my/file.txt", "rb")))

"""
import abc
import logging
import re
import typing as t
from dataclasses import dataclass

from .types import ClamdError, \
    ClamdInvalidResponseError, \
    ClamdScanFailureError, \
    ClamdUnknownCommandError, \
    CommandDef, \
    CommandFormat, \
    ScanResult

if t.TYPE_CHECKING:
    from .client import ClamdTransport

logger = logging.getLogger(__name__)

T = t.TypeVar("T")

UNKNOWN_COMMAND = "UNKNOWN COMMAND"

DEFAULT_CHUNK_SIZE = 2048

response_ok_pattern = re.compile(r"(.+) OK")
response_found_pattern = re.compile(r"(.+) FOUND$", re.MULTILINE)
response_error_pattern = re.compile(r"(.+) ERROR")
# the optional first group is the "stream: " prefix of INSTREAM replies
response_found_line_pattern = re.compile(r"(.+: )?(.+): (.+) FOUND")
response_line_separator = re.compile(r"[\n\x00]")


class Command(abc.ABC, t.Generic[T]):
    """Abstract clamd command producing a result of type T.
    """
    command_def: CommandDef

    @property
    def verb(self) -> str:
        return self.command_def.verb

    @property
    def format(self) -> CommandFormat:
        return self.command_def.format

    def argument(self) -> str | None:
        """Argument appended to the verb, if any.
        """
        return None

    def raw_command(self) -> str:
        """Frame the command as clamd expects it on the wire.

        :return: prefix + verb + [" " + argument] + terminator
        """
        arg = self.argument()
        body = self.verb if arg is None else f"{self.verb} {arg}"
        return f"{self.format.prefix}{body}{self.format.terminator}"

    def exchange(self, transport: "ClamdTransport") -> str:
        """Send the framed command and return the raw response.
        """
        return transport.send_command(self.raw_command())

    def remove_response_terminator(self, response: str) -> str:
        """Strip the single trailing terminator clamd puts on responses.
        """
        terminator = self.format.terminator
        if response.endswith(terminator):
            return response[:-len(terminator)]
        return response

    @abc.abstractmethod
    def parse_response(self, response: str) -> T:
        """Parse the response text, terminator already removed.
        """


class Ping(Command[bool]):
    """Check the server's state. It should reply with "PONG".
    """
    command_def = CommandDef("PING", CommandFormat.NULL_CHAR)

    def parse_response(self, response: str) -> bool:
        return response.strip().lower() == "pong"


class Version(Command[str]):
    """Print program and database versions.
    """
    command_def = CommandDef("VERSION", CommandFormat.NULL_CHAR)

    def parse_response(self, response: str) -> str:
        return response


class VersionCommands(Command[list[str]]):
    """Print program and database versions, followed by the list of
    commands supported by the daemon.
    """
    command_def = CommandDef("VERSIONCOMMANDS", CommandFormat.NEW_LINE)

    commands_marker = "| COMMANDS:"

    def parse_response(self, response: str) -> list[str]:
        pos = response.find(self.commands_marker)
        if pos == -1:
            raise ClamdInvalidResponseError(response)

        return response[pos + len(self.commands_marker):].split()


class Stats(Command[str]):
    """Statistics about the scan queue, contents of scan queue, and
    memory usage.
    """
    command_def = CommandDef("STATS", CommandFormat.NEW_LINE)

    def parse_response(self, response: str) -> str:
        return response


class Reload(Command[None]):
    """Reload the virus databases.
    """
    command_def = CommandDef("RELOAD", CommandFormat.NULL_CHAR)

    def parse_response(self, response: str) -> None:
        if response != "RELOADING":
            raise ClamdInvalidResponseError(response)


class Shutdown(Command[None]):
    """Perform a clean exit of the daemon.
    """
    command_def = CommandDef("SHUTDOWN", CommandFormat.NULL_CHAR)

    def parse_response(self, response: str) -> None:
        return None


class ScanCommand(Command[ScanResult]):
    """Base of the scanning commands, they all share the response
    grammar.
    """
    def parse_response(self, response: str) -> ScanResult:
        try:
            return self._parse_scan_response(response)
        except (re.error, IndexError) as e:
            raise ClamdInvalidResponseError(response) from e

    def _parse_scan_response(self, response: str) -> ScanResult:
        if response_ok_pattern.fullmatch(response):
            return ScanResult.ok()

        if response_found_pattern.search(response):
            virus_found: dict[str, list[str]] = {}
            for line in response_line_separator.split(response):
                m = response_found_line_pattern.fullmatch(line)
                if m:
                    virus_found.setdefault(m.group(2), []).append(m.group(3))
            if not virus_found:
                raise ClamdInvalidResponseError(response)
            return ScanResult.virus_found_result(virus_found)

        if response_error_pattern.fullmatch(response):
            raise ClamdScanFailureError(response)

        raise ClamdInvalidResponseError(response)


class PathScanCommand(ScanCommand):
    """Scanning command taking a path on the daemon host.
    """
    def __init__(self, path: str):
        self.path = path

    def argument(self) -> str:
        return self.path


class Scan(PathScanCommand):
    """Scan a file or a directory (recursively), stop at the first
    virus found.
    """
    command_def = CommandDef("SCAN", CommandFormat.NULL_CHAR)


class ContScan(PathScanCommand):
    """Scan a file or directory (recursively) and don't stop the
    scanning when a virus is found.
    """
    command_def = CommandDef("CONTSCAN", CommandFormat.NEW_LINE)


class MultiScan(PathScanCommand):
    """Scan a file or directory (recursively) in parallel using
    multiple daemon threads.
    """
    command_def = CommandDef("MULTISCAN", CommandFormat.NEW_LINE)


class InStream(ScanCommand):
    """Scan a stream of data.

    The stream is sent to clamd in chunks, after INSTREAM, on the same
    socket on which the command was sent.
    """
    command_def = CommandDef("INSTREAM", CommandFormat.NULL_CHAR)

    def __init__(self, input_stream: t.IO[bytes],
                 chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.input_stream = input_stream
        self.chunk_size = chunk_size

    def exchange(self, transport: "ClamdTransport") -> str:
        return transport.send_command_with_stream(self.raw_command(),
                                                  self.input_stream,
                                                  self.chunk_size)


@dataclass(frozen=True)
class CommandOutcome(t.Generic[T]):
    """Outcome of a command run, either a value or a clamd error.
    """
    value: T | None = None
    error: ClamdError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value


def send(transport: "ClamdTransport", command: Command[T]) -> T:
    """Run a command on clamd and return its parsed result.

    :param transport: Transport connecting to clamd
    :param command: Command to run
    :return: Result of the command
    :raises ClamdError: On communication, protocol or scan failures
    """
    raw_resp = command.exchange(transport)
    logger.debug("Command %s raw response: %r", command.verb, raw_resp)

    response = command.remove_response_terminator(raw_resp)
    if response == UNKNOWN_COMMAND:
        raise ClamdUnknownCommandError(command.verb)

    return command.parse_response(response)


def execute(transport: "ClamdTransport",
            command: Command[T]) -> CommandOutcome[T]:
    """Run a command on clamd, reporting clamd errors as an outcome
    instead of raising them.
    """
    try:
        return CommandOutcome(value=send(transport, command))
    except ClamdError as e:
        return CommandOutcome(error=e)
