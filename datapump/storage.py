"""
Filesystem abstraction layer for the loader.

Provides a unified interface for the operations the loader needs on both
the local filesystem (where the replication tool writes its files) and the
distributed filesystem holding the staging directory: Google Cloud Storage
in production, a local directory in development.

The Protocol pattern lets the validator and batch runner work with any
backend without knowing the implementation details.
"""

import shutil
from pathlib import Path
from typing import Protocol

from datapump.errors import ConfigError


class FileSystem(Protocol):
    """
    Protocol defining the filesystem interface.

    Directory operations report failure through their return value, the
    same way the validator expects them to.
    """

    def exists(self, path: str) -> bool:
        """Whether a file or directory exists at path."""
        ...

    def mkdirs(self, path: str) -> bool:
        """Create a directory and its parents. False if it could not be created."""
        ...

    def resolve_path(self, path: str) -> str:
        """Return the canonical absolute form of path."""
        ...

    def delete(self, path: str, recursive: bool = False) -> bool:
        """Delete a file or directory. False if nothing was deleted."""
        ...

    def list_files(self, path: str) -> list[str]:
        """List files directly inside a directory."""
        ...

    def read_file(self, path: str) -> bytes:
        """Read and return the entire contents of a file."""
        ...

    def write_file(self, path: str, data: bytes) -> None:
        """Write data to a file, replacing it if present."""
        ...

    def copy_from_local(self, src: str, dst: str) -> None:
        """Copy a file from the local filesystem to dst without buffering it in memory."""
        ...

    def rename(self, src: str, dst: str) -> None:
        """Move a file from src to dst."""
        ...

    def join(self, base: str, name: str) -> str:
        """Join a base path with a name."""
        ...


class LocalFileSystem:
    """
    Local filesystem implementation.

    Used for the replication tool's output directory and, in local
    development, as the staging filesystem next to DuckDB.
    """

    def exists(self, path: str) -> bool:
        return Path(path).exists()

    def mkdirs(self, path: str) -> bool:
        try:
            Path(path).mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        return Path(path).is_dir()

    def resolve_path(self, path: str) -> str:
        return str(Path(path).resolve())

    def delete(self, path: str, recursive: bool = False) -> bool:
        target = Path(path)
        try:
            if target.is_dir():
                if recursive:
                    shutil.rmtree(target)
                else:
                    target.rmdir()
            else:
                target.unlink()
        except OSError:
            return False
        return True

    def list_files(self, path: str) -> list[str]:
        directory = Path(path)
        if not directory.is_dir():
            return []
        return sorted(str(f) for f in directory.iterdir() if f.is_file())

    def read_file(self, path: str) -> bytes:
        return Path(path).read_bytes()

    def write_file(self, path: str, data: bytes) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def copy_from_local(self, src: str, dst: str) -> None:
        dst_path = Path(dst)
        dst_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dst_path)

    def rename(self, src: str, dst: str) -> None:
        dst_path = Path(dst)
        dst_path.parent.mkdir(parents=True, exist_ok=True)
        Path(src).rename(dst_path)

    def join(self, base: str, name: str) -> str:
        return str(Path(base) / name)


class GCSFileSystem:
    """
    Google Cloud Storage implementation.

    GCS has no real directories. A directory is represented by a
    zero-byte placeholder blob whose name ends with "/", and exists if any
    blob lives under its prefix.
    """

    def __init__(self):
        """
        Initialise the GCS client.

        Uses Application Default Credentials, which automatically
        works with GKE Workload Identity in production.
        """
        from google.cloud import storage
        self.client = storage.Client()

    def _parse_gcs_path(self, path: str) -> tuple[str, str]:
        """
        Parse a gs:// URI into bucket and key.

        Example:
            "gs://my-bucket/stage/db/tbl" -> ("my-bucket", "stage/db/tbl")
        """
        path = path.removeprefix("gs://")
        bucket, _, key = path.partition("/")
        return bucket, key

    def _prefix(self, key: str) -> str:
        return key if not key or key.endswith("/") else key + "/"

    def exists(self, path: str) -> bool:
        bucket_name, key = self._parse_gcs_path(path)
        bucket = self.client.bucket(bucket_name)

        if key and bucket.blob(key).exists():
            return True

        blobs = self.client.list_blobs(bucket_name, prefix=self._prefix(key), max_results=1)
        return any(True for _ in blobs)

    def mkdirs(self, path: str) -> bool:
        from google.api_core import exceptions as gcp_exceptions

        bucket_name, key = self._parse_gcs_path(path)
        placeholder = self.client.bucket(bucket_name).blob(self._prefix(key))
        try:
            placeholder.upload_from_string(b"")
        except gcp_exceptions.GoogleAPICallError:
            return False
        return True

    def resolve_path(self, path: str) -> str:
        bucket_name, key = self._parse_gcs_path(path)
        # Collapse duplicate and trailing slashes
        parts = [p for p in key.split("/") if p]
        return f"gs://{bucket_name}/{'/'.join(parts)}"

    def delete(self, path: str, recursive: bool = False) -> bool:
        from google.api_core import exceptions as gcp_exceptions

        bucket_name, key = self._parse_gcs_path(path)
        bucket = self.client.bucket(bucket_name)

        try:
            if not recursive:
                bucket.blob(key).delete()
                return True

            blobs = list(self.client.list_blobs(bucket_name, prefix=self._prefix(key)))
            if not blobs:
                return False
            for blob in blobs:
                blob.delete()
        except gcp_exceptions.GoogleAPICallError:
            return False
        return True

    def list_files(self, path: str) -> list[str]:
        bucket_name, key = self._parse_gcs_path(path)
        blobs = self.client.list_blobs(bucket_name, prefix=self._prefix(key), delimiter="/")
        return sorted(
            f"gs://{bucket_name}/{blob.name}"
            for blob in blobs
            if not blob.name.endswith("/")
        )

    def read_file(self, path: str) -> bytes:
        bucket_name, key = self._parse_gcs_path(path)
        return self.client.bucket(bucket_name).blob(key).download_as_bytes()

    def write_file(self, path: str, data: bytes) -> None:
        bucket_name, key = self._parse_gcs_path(path)
        self.client.bucket(bucket_name).blob(key).upload_from_string(data)

    def copy_from_local(self, src: str, dst: str) -> None:
        bucket_name, key = self._parse_gcs_path(dst)
        self.client.bucket(bucket_name).blob(key).upload_from_filename(src)

    def rename(self, src: str, dst: str) -> None:
        """
        GCS doesn't have a native move operation, so this copies
        the blob to the new location then deletes the original.
        """
        src_bucket_name, src_key = self._parse_gcs_path(src)
        dst_bucket_name, dst_key = self._parse_gcs_path(dst)

        src_bucket = self.client.bucket(src_bucket_name)
        dst_bucket = self.client.bucket(dst_bucket_name)
        src_blob = src_bucket.blob(src_key)

        src_bucket.copy_blob(src_blob, dst_bucket, dst_key)
        src_blob.delete()

    def join(self, base: str, name: str) -> str:
        return f"{base.rstrip('/')}/{name}"


def create_filesystem(backend: str) -> FileSystem:
    """Create the staging filesystem for a backend name ("local" or "gcs")."""
    if backend == "gcs":
        return GCSFileSystem()
    if backend == "local":
        return LocalFileSystem()
    raise ConfigError(f"unknown filesystem backend: {backend}")
