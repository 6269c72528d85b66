"""Continuous scanning of a filestore, one directory at a time.

.. code-block:: python

    clamd = Clamd(ClamdTCPSocket("localhost", 3310))
    cycler = DirCycler("/data/filestore", state_file="/data/cycler.state")
    scanner = FilestoreScanner(clamd, on_result=print)

    processor = FilestoreDirProcessor(cycler, 60, 300, scanner)
    processor.start()
    ...
    processor.close()

"""
import logging
import os
import typing as t
from pathlib import Path

from .clamd import Clamd, ScanResult
from .events import ErrorEvent, \
    FilestoreScanEvent, \
    FilestoreScanResultEvent, \
    TerminationEvent
from .service import Service, WorkerRegistry, WorkerTask

logger = logging.getLogger(__name__)

E = t.TypeVar("E")

Listener = t.Callable[[E], None]

# pause after an unexpected error, prevents thread spinning in fatal
# error conditions
ERROR_BACKOFF_SECONDS = 5.0


class Cycler(t.Protocol):
    """Stateful round-robin cursor over directories, see DirCycler.
    """
    def refresh(self) -> None: ...

    def is_empty(self) -> bool: ...

    def is_last(self) -> bool: ...

    def next_dir(self) -> "os.PathLike[str] | str | None": ...


def safe_fire(listener: Listener[E] | None, event: E) -> None:
    """Notify a listener, its failures are logged and swallowed.
    """
    if listener is None:
        return
    try:
        listener(event)
    except Exception:
        logger.exception("Listener %r failed on %s", listener, event)


class FilestoreDirProcessor(Service):
    """Service cycling through the filestore directories, firing a scan
    event per directory.

    When the filestore is empty the worker sleeps ``sleep_seconds_on_idle``
    before looking again; after the last directory of a cycle it sleeps
    ``sleep_seconds_at_rollover``.  Both pauses are cut short by close().
    """
    def __init__(self,
                 cycler: Cycler,
                 sleep_seconds_on_idle: float,
                 sleep_seconds_at_rollover: float,
                 scan_listener: Listener[FilestoreScanEvent],
                 error_listener: Listener[ErrorEvent] | None = None,
                 termination_listener: Listener[TerminationEvent] | None = None,
                 min_sleep_seconds: float = 1.0,
                 error_backoff_seconds: float = ERROR_BACKOFF_SECONDS,
                 registry: WorkerRegistry | None = None):
        super().__init__(registry=registry)
        if cycler is None:
            raise ValueError("A 'cycler' must not be None")
        if scan_listener is None:
            raise ValueError("A 'scan_listener' must not be None")

        self.cycler = cycler
        self.sleep_seconds_on_idle = max(min_sleep_seconds,
                                         sleep_seconds_on_idle)
        self.sleep_seconds_at_rollover = max(min_sleep_seconds,
                                             sleep_seconds_at_rollover)
        self.error_backoff_seconds = max(min_sleep_seconds,
                                         error_backoff_seconds)
        self.scan_listener = scan_listener
        self.error_listener = error_listener
        self.termination_listener = termination_listener

    def on_start(self) -> None:
        self.cycler.refresh()
        self.start_service_thread(self._work)

    def on_close(self) -> None:
        pass

    def _work(self, task: WorkerTask) -> None:
        self.entered_running_state()

        while self.is_in_running_state():
            try:
                if self.cycler.is_empty():
                    self._sleep(task, self.sleep_seconds_on_idle, "idle")
                    continue

                directory = self.cycler.next_dir()
                if directory is not None:
                    safe_fire(self.scan_listener,
                              FilestoreScanEvent(Path(directory)))

                if self.cycler.is_last():
                    self._sleep(task, self.sleep_seconds_at_rollover,
                                "rollover")
            except Exception as e:
                logger.exception("%s iteration failed", self.name)
                safe_fire(self.error_listener,
                          ErrorEvent(f"{self.name} iteration failed: {e}", e))
                self._sleep(task, self.error_backoff_seconds, "error")

        logger.info("%s worker stopped", self.name)
        safe_fire(self.termination_listener, TerminationEvent(self.name))

    def _sleep(self, task: WorkerTask, seconds: float, reason: str) -> None:
        logger.debug("%s sleeping %.1fs (%s)", self.name, seconds, reason)
        task.sleep(seconds)


class FilestoreScanner:
    """Scan listener running a clamd CONTSCAN on every directory event.

    Results are published as FilestoreScanResultEvent, clamd errors are
    published as ErrorEvent.
    """
    def __init__(self,
                 clamd: Clamd,
                 on_result: Listener[FilestoreScanResultEvent],
                 on_error: Listener[ErrorEvent] | None = None):
        self.clamd = clamd
        self.on_result = on_result
        self.on_error = on_error

    def __call__(self, event: FilestoreScanEvent) -> None:
        try:
            result: ScanResult = self.clamd.scan_path(event.path,
                                                      continue_scan=True)
        except Exception as e:
            logger.warning("Scanning %s failed: %s", event.path, e)
            safe_fire(self.on_error,
                      ErrorEvent(f"Scanning {event.path} failed: {e}", e))
            return

        if result.has_virus():
            logger.warning("Virus found in %s: %s", event.path,
                           dict(result.virus_found))
        safe_fire(self.on_result, FilestoreScanResultEvent(event.path, result))
