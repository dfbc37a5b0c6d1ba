"""Control files written by the replication tool.

The replication tool appends the name of every data file it finishes to a
control file, one per line. Each batch claims the control file by renaming
it with a millisecond timestamp suffix, so the tool starts a fresh one while
the claimed list is loaded. Once loaded it is renamed with a ".loaded"
suffix and deleted with its data files; if the load fails it is renamed
with a ".failed" suffix instead. Neither suffix is ever resumed.
"""

import re
import time
from dataclasses import dataclass, field
from pathlib import PurePath

import structlog

from datapump.storage import FileSystem

log = structlog.get_logger()

FAILED_SUFFIX = ".failed"
LOADED_SUFFIX = ".loaded"


def parse_control_file(content: bytes, directory: str, fs: FileSystem) -> list[str]:
    """
    Extract data file paths from control file contents.

    Blank lines and lines starting with # are skipped. Relative paths are
    resolved against the control file's directory. Duplicates are dropped,
    keeping the first occurrence.
    """
    files: list[str] = []
    for line in content.decode("utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        path = line if PurePath(line).is_absolute() else fs.join(directory, line)
        if path not in files:
            files.append(path)

    return files


@dataclass
class ControlFile:
    """A claimed control file and the data files it lists."""
    path: str
    data_files: list[str]
    fs: FileSystem = field(repr=False)

    def acknowledge(self) -> None:
        """
        Mark the control file loaded, then delete it and its data files.

        The rename to ".loaded" takes the file out of the claimed set in one
        step, so a failed delete afterwards can never cause a second load.
        """
        loaded_path = self.path + LOADED_SUFFIX
        self.fs.rename(self.path, loaded_path)

        for data_file in self.data_files:
            if not self.fs.delete(data_file):
                log.warning("data_file_not_deleted", file=data_file, control_file=loaded_path)

        if not self.fs.delete(loaded_path):
            log.warning("control_file_not_deleted", control_file=loaded_path)

    def quarantine(self) -> str:
        """Set the control file aside so it is not picked up again."""
        failed_path = self.path + FAILED_SUFFIX
        self.fs.rename(self.path, failed_path)
        log.warning("control_file_quarantined", control_file=failed_path)
        return failed_path

    def __str__(self) -> str:
        return f"{self.path} ({len(self.data_files)} data files)"


class ControlFileSource:
    """
    Cursor over the control file of one replicated table.

    next() returns the next ControlFile to load, or None when there is no
    new data. Control files claimed before a crash are returned first,
    oldest first.
    """

    def __init__(self, fs: FileSystem, path: str):
        self.fs = fs
        self.path = path
        self.directory = str(PurePath(path).parent)
        self._claimed_re = re.compile(re.escape(PurePath(path).name) + r"\.(\d+)$")

    def _claimed(self) -> list[str]:
        claimed = []
        for candidate in self.fs.list_files(self.directory):
            match = self._claimed_re.match(PurePath(candidate).name)
            if match:
                claimed.append((int(match.group(1)), candidate))
        return [path for _, path in sorted(claimed)]

    def _load(self, path: str) -> ControlFile | None:
        data_files = parse_control_file(self.fs.read_file(path), self.directory, self.fs)
        if not data_files:
            log.info("empty_control_file_removed", control_file=path)
            self.fs.delete(path)
            return None
        return ControlFile(path=path, data_files=data_files, fs=self.fs)

    def next(self) -> ControlFile | None:
        for path in self._claimed():
            control_file = self._load(path)
            if control_file is not None:
                log.info("resuming_claimed_control_file", control_file=path)
                return control_file

        if not self.fs.exists(self.path):
            return None

        if not parse_control_file(self.fs.read_file(self.path), self.directory, self.fs):
            return None

        claimed_path = f"{self.path}.{int(time.time() * 1000)}"
        self.fs.rename(self.path, claimed_path)
        log.debug("control_file_claimed", control_file=claimed_path)

        return self._load(claimed_path)

    def __str__(self) -> str:
        return self.path
