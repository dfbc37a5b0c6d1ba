"""
Shared test fixtures for the loader tests.
"""

from pathlib import PurePosixPath

import pytest
import yaml

from datapump.errors import QueryExecutionError, TableAlreadyExists


class FakeFileSystem:
    """
    In-memory filesystem following the FileSystem protocol.

    Directories are tracked explicitly, files map path -> bytes. The
    fail_mkdirs / fail_delete switches make mkdirs and delete report
    failure the way a permission problem would.
    """

    SCHEME = "hdfs://namenode:8020"

    def __init__(self) -> None:
        self.dirs: set[str] = set()
        self.files: dict[str, bytes] = {}
        self.fail_mkdirs = False
        self.fail_delete = False
        self.calls: list[tuple[str, str]] = []
        # Source of copy_from_local, itself when unset
        self.local: "FakeFileSystem | None" = None

    def _norm(self, path: str) -> str:
        path = path.removeprefix(self.SCHEME)
        return str(PurePosixPath("/") / path)

    def exists(self, path: str) -> bool:
        self.calls.append(("exists", path))
        path = self._norm(path)
        return path in self.dirs or path in self.files

    def mkdirs(self, path: str) -> bool:
        self.calls.append(("mkdirs", path))
        if self.fail_mkdirs:
            return False
        self._add_dirs(path)
        return True

    def _add_dirs(self, path: str) -> None:
        current = PurePosixPath(self._norm(path))
        for parent in [current, *current.parents]:
            self.dirs.add(str(parent))

    def resolve_path(self, path: str) -> str:
        return self.SCHEME + self._norm(path)

    def delete(self, path: str, recursive: bool = False) -> bool:
        self.calls.append(("delete", path))
        if self.fail_delete:
            return False
        path = self._norm(path)
        if path in self.files:
            del self.files[path]
            return True
        if path not in self.dirs:
            return False
        children = [p for p in (*self.dirs, *self.files) if p.startswith(path + "/")]
        if children and not recursive:
            return False
        for child in children:
            self.dirs.discard(child)
            self.files.pop(child, None)
        self.dirs.discard(path)
        return True

    def list_files(self, path: str) -> list[str]:
        path = self._norm(path)
        return sorted(p for p in self.files if str(PurePosixPath(p).parent) == path)

    def read_file(self, path: str) -> bytes:
        return self.files[self._norm(path)]

    def write_file(self, path: str, data: bytes) -> None:
        path = self._norm(path)
        self._add_dirs(str(PurePosixPath(path).parent))
        self.files[path] = data

    def copy_from_local(self, src: str, dst: str) -> None:
        self.write_file(dst, (self.local or self).read_file(src))

    def rename(self, src: str, dst: str) -> None:
        self.files[self._norm(dst)] = self.files.pop(self._norm(src))

    def join(self, base: str, name: str) -> str:
        return f"{base.rstrip('/')}/{name}"


class FakeEngine:
    """
    Query engine that records statements instead of running them.

    errors maps a substring of a statement to the exception raised when
    a statement containing it is executed.
    """

    dialect = "duckdb"

    def __init__(self) -> None:
        self.executed: list[str] = []
        self.errors: dict[str, Exception] = {}
        self.closed = False

    def execute(self, sql: str) -> None:
        for marker, error in self.errors.items():
            if marker in sql:
                raise error
        self.executed.append(sql)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_local():
    return FakeFileSystem()


@pytest.fixture
def fake_fs(fake_local):
    fs = FakeFileSystem()
    fs.local = fake_local
    return fs


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def table_already_exists():
    return TableAlreadyExists('Catalog Error: Table with name "orders" already exists!')


@pytest.fixture
def permission_denied():
    return QueryExecutionError("Permission denied on database sales")


@pytest.fixture
def definition_file(tmp_path):
    """Source table definition with three columns."""
    path = tmp_path / "orders.yaml"
    path.write_text(yaml.safe_dump({
        "schema": "db",
        "table": "tbl",
        "columns": [
            {"name": "ORDER_ID", "type": "NUMBER(10,0)"},
            {"name": "CUSTOMER", "type": "VARCHAR2(100)"},
            {"name": "AMOUNT", "type": "NUMBER(12,2)"},
        ],
    }))
    return str(path)


@pytest.fixture
def raw_config(definition_file, tmp_path):
    """Minimal configuration mapping pointing at the fake staging path."""
    return {
        "definition_file": definition_file,
        "staging_directory": "/stage/{schema}/{table}",
        "control_file": str(tmp_path / "ogg" / "orders.ctl"),
        "seconds_between_batches": 1,
    }
