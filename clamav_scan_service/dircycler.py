"""Round-robin cursor over the sub directories of a filestore.

The filestore grows over time, new directories are picked up whenever
the cycler wraps around or finds itself empty.

"""
import logging
import os
import threading
from pathlib import Path

logger = logging.getLogger(__name__)


class DirCycler:
    """Cycle through the sub directories of a root directory in sorted
    order.

    If a state file is given, the name of the last directory returned is
    saved to it after every move, and loaded back at construction so a
    restarted process proceeds where it has left off.
    """
    def __init__(self,
                 root_dir: "str | os.PathLike[str]",
                 state_file: "str | os.PathLike[str] | None" = None):
        """Create a cycler on a directory.

        :param root_dir: Directory whose sub directories are cycled
        :param state_file: Optional file to persist the cycler state
        """
        if root_dir is None:
            raise ValueError("A 'root_dir' must not be None")
        self.root_dir = Path(root_dir)
        if not self.root_dir.is_dir():
            raise ValueError(f"The root dir {self.root_dir} does not exist "
                             "or is not a directory")
        self.state_file = Path(state_file) if state_file else None

        self._lock = threading.RLock()
        self._sub_dirs: list[Path] = []
        self._last_idx = -1

        self._refresh_dirs()
        if self.state_file is not None:
            self.load_state(self.state_file)

    def dirs(self) -> list[Path]:
        """Sub directories of the root, sorted by name.
        """
        return sorted(p for p in self.root_dir.iterdir() if p.is_dir())

    def is_empty(self) -> bool:
        with self._lock:
            return not self._sub_dirs

    def size(self) -> int:
        with self._lock:
            return len(self._sub_dirs)

    def is_first(self) -> bool:
        with self._lock:
            return self._last_idx == 0

    def is_last(self) -> bool:
        with self._lock:
            return (bool(self._sub_dirs)
                    and self._last_idx == len(self._sub_dirs) - 1)

    def next_dir(self) -> Path | None:
        """Move to the next directory.

        :return: The next directory or None if the root has no sub
            directories
        """
        with self._lock:
            if not self._sub_dirs:
                # check if new filestore dirs arrived
                self._refresh_dirs()
                if not self._sub_dirs:
                    return None

            idx = self._last_idx + 1
            if idx >= len(self._sub_dirs):
                # past the last directory, reflect dir changes
                self._refresh_dirs()
                if not self._sub_dirs:
                    return None
                idx = 0

            self._last_idx = idx
            self._save_state()
            return self._sub_dirs[idx]

    def peek_next_dir(self) -> Path | None:
        with self._lock:
            if not self._sub_dirs:
                return None
            idx = self._last_idx + 1
            return self._sub_dirs[idx if idx < len(self._sub_dirs) else 0]

    def refresh(self) -> None:
        """Rescan the sub directories.

        The cursor stays on the last directory returned if it still
        exists, otherwise the cycle restarts.
        """
        with self._lock:
            name = self.last_dir_name()
            self._refresh_dirs()
            self._last_idx = self._index_of(name)
            self._save_state()

    def last_dir_name(self) -> str | None:
        """Name of the last directory returned by next_dir.
        """
        with self._lock:
            if 0 <= self._last_idx < len(self._sub_dirs):
                return self._sub_dirs[self._last_idx].name
            return None

    def restore_last_dir_name(self, name: str | None) -> None:
        """Restore the cycler as if ``name`` was the last directory
        returned.  An unknown name restarts the cycle.
        """
        with self._lock:
            self._refresh_dirs()
            self._last_idx = self._index_of(name)
            self._save_state()

    def load_state(self, state_file: "str | os.PathLike[str]") -> None:
        state_file = Path(state_file)
        with self._lock:
            if state_file.is_file():
                last_dir = state_file.read_text(encoding="utf-8")
                logger.debug("Restoring cycler state '%s' from %s",
                             last_dir, state_file)
                self.restore_last_dir_name(last_dir or None)
            else:
                self.restore_last_dir_name(None)

    def save_state(self, state_file: "str | os.PathLike[str]") -> None:
        with self._lock:
            Path(state_file).write_text(self.last_dir_name() or "",
                                        encoding="utf-8")

    def _save_state(self) -> None:
        if self.state_file is not None:
            self.save_state(self.state_file)

    def _refresh_dirs(self) -> None:
        self._sub_dirs = self.dirs()
        self._last_idx = -1

    def _index_of(self, name: str | None) -> int:
        if name is not None:
            for idx, sub_dir in enumerate(self._sub_dirs):
                if sub_dir.name == name:
                    return idx
        return -1

    def __repr__(self):
        return f"DirCycler({self.root_dir})"
