import threading
from pathlib import Path

import pytest

from clamav_scan_service.clamd import ClamdScanFailureError, ScanResult
from clamav_scan_service.dircycler import DirCycler
from clamav_scan_service.events import ErrorEvent, FilestoreScanEvent, \
    TerminationEvent
from clamav_scan_service.processor import FilestoreDirProcessor, \
    FilestoreScanner
from clamav_scan_service.service import ServiceStatus


class ListCycler:
    def __init__(self, dirs, fail_times=0):
        self.dirs = [Path(d) for d in dirs]
        self.idx = -1
        self.refreshed = 0
        self.fail_times = fail_times

    def refresh(self):
        self.refreshed += 1
        self.idx = -1

    def is_empty(self):
        return not self.dirs

    def is_last(self):
        return bool(self.dirs) and self.idx == len(self.dirs) - 1

    def next_dir(self):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise OSError("filestore not mounted")
        self.idx = (self.idx + 1) % len(self.dirs)
        return self.dirs[self.idx]


class RecordingProcessor(FilestoreDirProcessor):
    """Processor logging scan events and sleeps on one timeline, sleeping
    just a millisecond.
    """
    def __init__(self, cycler, until, **kwargs):
        self.timeline = []
        self.done = threading.Event()
        self.until = until
        super().__init__(cycler, 60, 300, self._on_scan, **kwargs)

    def _on_scan(self, event):
        self.timeline.append(("scan", event.path.name))
        self._check_done()

    def _sleep(self, task, seconds, reason):
        self.timeline.append(("sleep", reason))
        self._check_done()
        task.sleep(0.001)

    def _check_done(self):
        if len(self.timeline) >= self.until:
            self.done.set()


def run_until_done(processor):
    processor.start()
    assert processor.done.wait(5)
    processor.close()
    processor.join_workers(5)


def test_cycles_in_order_with_rollover_sleep():
    cycler = ListCycler(["D0", "D1", "D2"])
    processor = RecordingProcessor(cycler, until=12)

    run_until_done(processor)

    assert cycler.refreshed == 1
    assert processor.timeline[:12] == [
        ("scan", "D0"), ("scan", "D1"), ("scan", "D2"), ("sleep", "rollover"),
        ("scan", "D0"), ("scan", "D1"), ("scan", "D2"), ("sleep", "rollover"),
        ("scan", "D0"), ("scan", "D1"), ("scan", "D2"), ("sleep", "rollover"),
    ]


def test_idle_sleep_when_empty():
    processor = RecordingProcessor(ListCycler([]), until=3)

    run_until_done(processor)

    assert processor.timeline[:3] == [("sleep", "idle")] * 3


def test_error_backoff_and_recovery():
    errors = []
    cycler = ListCycler(["D0"], fail_times=2)
    processor = RecordingProcessor(cycler, until=5,
                                   error_listener=errors.append)

    run_until_done(processor)

    assert processor.timeline[:5] == [
        ("sleep", "error"), ("sleep", "error"),
        ("scan", "D0"), ("sleep", "rollover"), ("scan", "D0"),
    ]
    assert len(errors) >= 2
    assert isinstance(errors[0], ErrorEvent)
    assert isinstance(errors[0].exception, OSError)


def test_failing_listener_does_not_stop_the_loop():
    calls = []
    errors = []
    seen = threading.Event()

    def bad_listener(event):
        calls.append(event)
        if len(calls) >= 4:
            seen.set()
        raise RuntimeError("consumer is broken")

    processor = FilestoreDirProcessor(
        ListCycler(["D0", "D1"]), 0, 0, bad_listener,
        error_listener=errors.append,
        min_sleep_seconds=0.001)
    processor.start()

    assert seen.wait(5)
    processor.close()
    assert [e.path.name for e in calls[:4]] == ["D0", "D1", "D0", "D1"]
    # listener failures are not iteration errors
    assert not errors


def test_close_wakes_up_sleeping_worker():
    terminated = []
    stopped = threading.Event()

    def on_termination(event):
        terminated.append(event)
        stopped.set()

    processor = FilestoreDirProcessor(
        ListCycler([]), 3600, 3600, lambda event: None,
        termination_listener=on_termination)
    processor.start()
    assert processor.wait_running(2)

    processor.close()

    assert stopped.wait(2)
    assert terminated == [TerminationEvent("FilestoreDirProcessor")]
    assert processor.status is ServiceStatus.CLOSED


def test_sleep_values_clamped():
    processor = FilestoreDirProcessor(ListCycler([]), 0, -5,
                                      lambda event: None)

    assert processor.sleep_seconds_on_idle == 1.0
    assert processor.sleep_seconds_at_rollover == 1.0


def test_error_backoff_clamped():
    processor = FilestoreDirProcessor(ListCycler([]), 1, 1,
                                      lambda event: None,
                                      error_backoff_seconds=0)

    assert processor.error_backoff_seconds == 1.0


def test_mandatory_arguments():
    with pytest.raises(ValueError):
        FilestoreDirProcessor(None, 1, 1, lambda event: None)
    with pytest.raises(ValueError):
        FilestoreDirProcessor(ListCycler([]), 1, 1, None)


def test_with_dir_cycler(tmp_path):
    for name in ("b", "a"):
        (tmp_path / name).mkdir()
    events = []
    seen = threading.Event()

    def on_scan(event):
        events.append(event)
        if len(events) >= 2:
            seen.set()

    processor = FilestoreDirProcessor(DirCycler(tmp_path), 1, 3600, on_scan)
    with processor:
        assert seen.wait(5)

    assert events[:2] == [FilestoreScanEvent(tmp_path / "a"),
                          FilestoreScanEvent(tmp_path / "b")]


def test_resumes_from_state_file(tmp_path):
    root = tmp_path / "filestore"
    root.mkdir()
    for name in ("a", "b", "c"):
        (root / name).mkdir()
    state_file = tmp_path / "cycler.state"
    state_file.write_text("b", encoding="utf-8")
    events = []
    seen = threading.Event()

    def on_scan(event):
        events.append(event)
        seen.set()

    processor = FilestoreDirProcessor(DirCycler(root, state_file), 1, 3600,
                                      on_scan)
    with processor:
        assert seen.wait(5)

    assert events[0] == FilestoreScanEvent(root / "c")
    assert state_file.read_text(encoding="utf-8") == "c"


class StubClamd:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.scanned = []

    def scan_path(self, path, continue_scan=False):
        self.scanned.append((path, continue_scan))
        if self.error:
            raise self.error
        return self.result


def test_filestore_scanner_publishes_result():
    infected = ScanResult.virus_found_result({"/fs/d0/x.exe": ["Trojan"]})
    clamd = StubClamd(result=infected)
    results = []
    scanner = FilestoreScanner(clamd, results.append)

    scanner(FilestoreScanEvent(Path("/fs/d0")))

    assert clamd.scanned == [(Path("/fs/d0"), True)]
    assert results[0].path == Path("/fs/d0")
    assert results[0].result is infected


def test_filestore_scanner_publishes_error():
    clamd = StubClamd(error=ClamdScanFailureError("/fs/d0: Boom ERROR"))
    results = []
    errors = []
    scanner = FilestoreScanner(clamd, results.append, errors.append)

    scanner(FilestoreScanEvent(Path("/fs/d0")))

    assert not results
    assert isinstance(errors[0].exception, ClamdScanFailureError)
