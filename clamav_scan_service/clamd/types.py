"""Types for clamd communication.

"""
import ntpath
import os
import posixpath
import types
from dataclasses import dataclass
from enum import Enum


class ClamdError(Exception):
    """Raised when error occurred communicating with the clamd daemon.
    """


class ClamdCommunicationError(ClamdError):
    """Raised on any I/O failure talking to clamd (connect, write, read,
    timeout).
    """


class ClamdUnknownCommandError(ClamdError):
    """Raised when clamd replies "UNKNOWN COMMAND".
    """
    def __init__(self, command: str):
        super().__init__(f"Unknown clamd command: {command}")
        self.command = command


class ClamdInvalidResponseError(ClamdError):
    """Raised when a clamd response does not match the grammar expected
    for the command.
    """
    def __init__(self, response: str):
        super().__init__(f"Invalid clamd response: {response}")
        self.response = response


class ClamdScanFailureError(ClamdError):
    """Raised when clamd explicitly reports an ERROR while scanning.
    """
    def __init__(self, response: str):
        super().__init__(f"clamd scan failure: {response}")
        self.response = response


class CommandFormat(Enum):
    """Framing of a clamd command.

    The prefix is put before the command: 'z' for null terminated
    commands or 'n' for newline terminated commands.  clamd terminates
    its reply with the same character.  Read more in man clamd(8)
    """
    NULL_CHAR = ("z", "\x00")
    NEW_LINE = ("n", "\n")

    def __init__(self, prefix: str, terminator: str):
        self.prefix = prefix
        self.terminator = terminator


@dataclass(frozen=True)
class CommandDef:
    """Verb of a clamd command along with its framing.
    """
    verb: str
    format: CommandFormat


class ScanResult:
    """Result of one or more clamd scans.

    A result is either clean or maps every infected object (file path or
    "stream") to the signatures found in it, in discovery order.
    """
    def __init__(self, virus_found: dict[str, list[str]] | None = None):
        self._virus_found: dict[str, list[str]] = {}
        if virus_found:
            for obj, signatures in virus_found.items():
                self._virus_found[obj] = list(signatures)

    @classmethod
    def ok(cls) -> "ScanResult":
        return cls()

    @classmethod
    def virus_found_result(cls,
                           virus_found: dict[str, list[str]]) -> "ScanResult":
        return cls(virus_found)

    def is_ok(self) -> bool:
        return not self._virus_found

    def has_virus(self) -> bool:
        return bool(self._virus_found)

    @property
    def virus_found(self) -> types.MappingProxyType:
        """Read-only view of the infected objects and their signatures.
        """
        return types.MappingProxyType(self._virus_found)

    def merge_with(self, other: "ScanResult | None") -> None:
        """Merge another result into this one.

        Signature lists of objects present in both results are
        concatenated, no deduplication takes place.

        :param other: Result to merge, None is ignored
        """
        if other is None:
            return
        for obj, signatures in other._virus_found.items():
            self._virus_found.setdefault(obj, []).extend(signatures)

    def __eq__(self, other):
        if not isinstance(other, ScanResult):
            return NotImplemented
        return self._virus_found == other._virus_found

    def __repr__(self):
        return f"ScanResult({self._virus_found!r})"

    def __str__(self):
        if self.is_ok():
            return "ScanResult: OK"

        lines = ["ScanResult: Virus found"]
        for obj, signatures in self._virus_found.items():
            lines.append(f"File: {obj}")
            lines.append(f"Virus Signatures: {', '.join(signatures)}")
        return os.linesep.join(lines)


@dataclass(frozen=True)
class CommandRunDetails:
    """Diagnostics of the last command exchanged with clamd.
    """
    command: str
    response: str
    elapsed_millis: int

    @classmethod
    def create(cls, raw_command: str, response: str,
               elapsed_millis: int) -> "CommandRunDetails":
        # make control chars visible
        command = raw_command.replace("\n", "[n").replace("\x00", "[0")
        return cls(command=command, response=response,
                   elapsed_millis=elapsed_millis)

    def elapsed_formatted(self) -> str:
        if self.elapsed_millis < 1000:
            return f"{self.elapsed_millis}ms"
        if self.elapsed_millis < 60000:
            return (f"{self.elapsed_millis // 1000}s "
                    f"{self.elapsed_millis % 1000}ms")
        seconds = self.elapsed_millis // 1000
        return f"{seconds // 60}m {seconds % 60}s"

    def __str__(self):
        return (f"CommandRunDetails ({self.elapsed_formatted()}):\n"
                f"{self.command}\n\n{self.response}")


class FileSeparator(Enum):
    """Path convention of the host clamd is running on.

    SCAN, CONTSCAN and MULTISCAN take a path on the daemon host, which
    may differ from the local one.
    """
    UNIX = "unix"
    WINDOWS = "windows"
    # no conversion, daemon runs on this host
    LOCAL = "local"

    @property
    def separator(self) -> str:
        if self is FileSeparator.UNIX:
            return posixpath.sep
        if self is FileSeparator.WINDOWS:
            return ntpath.sep
        return os.sep

    def to_server_path(self, path: "str | os.PathLike[str]") -> str:
        path = os.fspath(path)
        if self is FileSeparator.UNIX:
            return path.replace(ntpath.sep, posixpath.sep)
        if self is FileSeparator.WINDOWS:
            return path.replace(posixpath.sep, ntpath.sep)
        return path
