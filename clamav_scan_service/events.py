"""Events published by the scanning services.

"""
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .clamd.types import ScanResult


class ClamdAwaitingStatus(Enum):
    NOT_REACHABLE = "NOT_REACHABLE"
    REACHABLE = "REACHABLE"
    OPERATIONAL = "OPERATIONAL"


@dataclass(frozen=True)
class ClamdAwaitingEvent:
    """State of clamd observed while waiting for it to be operational.
    """
    status: ClamdAwaitingStatus


@dataclass(frozen=True)
class FilestoreScanEvent:
    """A filestore directory is due for scanning.
    """
    path: Path


@dataclass(frozen=True)
class FilestoreScanResultEvent:
    """Outcome of scanning a filestore directory.
    """
    path: Path
    result: "ScanResult"


@dataclass(frozen=True)
class ErrorEvent:
    """A service worker hit an error and carried on.
    """
    message: str
    exception: BaseException | None = None


@dataclass(frozen=True)
class TerminationEvent:
    """A service worker terminated.
    """
    name: str
