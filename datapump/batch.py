"""Loading of one control file's worth of data.

A batch:
1. Drops any staging table and directory left over from an earlier batch
2. Creates the staging directory and copies the data files into it
3. Creates the staging table over the staging directory
4. Inserts the staging rows into the target table

cleanup() then acknowledges (loaded) or quarantines (failed) the control
file, drops the staging table and removes the staging directory.
"""

import time

import structlog

from datapump.control import ControlFile
from datapump.engine import Query
from datapump.errors import BatchFailure
from datapump.storage import FileSystem

log = structlog.get_logger()


class Batch:
    """Loads the data files listed by one control file."""

    def __init__(
        self,
        local: FileSystem,
        dfs: FileSystem,
        control_file: ControlFile,
        staging_directory: str,
        drop_staging_table: Query,
        create_staging_table: Query,
        insert_into: Query,
    ) -> None:
        self.local = local
        self.dfs = dfs
        self.control_file = control_file
        self.staging_directory = staging_directory
        self.drop_staging_table = drop_staging_table
        self.create_staging_table = create_staging_table
        self.insert_into = insert_into
        self.succeeded = False
        self.duration_seconds = 0.0

    def run(self) -> None:
        started = time.monotonic()
        log.info(
            "batch_started",
            control_file=self.control_file.path,
            data_files=len(self.control_file.data_files),
        )

        try:
            self.drop_staging_table.execute()
            self._clear_leftover_staging()

            if not self.dfs.mkdirs(self.staging_directory):
                raise BatchFailure(
                    f"staging directory {self.staging_directory} could not be created",
                    control_file=self.control_file.path,
                )

            for index, data_file in enumerate(self.control_file.data_files):
                self._stage(index, data_file)

            self.create_staging_table.execute()
            self.insert_into.execute()
        except BatchFailure:
            raise
        except Exception as e:
            raise BatchFailure(
                f"batch for {self.control_file.path} failed: {e}",
                control_file=self.control_file.path,
            ) from e

        self.succeeded = True
        self.duration_seconds = time.monotonic() - started
        log.info(
            "batch_loaded",
            control_file=self.control_file.path,
            duration_seconds=round(self.duration_seconds, 3),
        )

    def _clear_leftover_staging(self) -> None:
        # Files left by a batch whose cleanup failed must not be loaded twice
        if not self.dfs.exists(self.staging_directory):
            return

        log.warning("leftover_staging_directory", path=self.staging_directory)
        if not self.dfs.delete(self.staging_directory, recursive=True):
            raise BatchFailure(
                f"leftover staging directory {self.staging_directory} could not be cleared",
                control_file=self.control_file.path,
            )

    def _stage(self, index: int, data_file: str) -> None:
        if not self.local.exists(data_file):
            raise BatchFailure(
                f"data file {data_file} listed in {self.control_file.path} not found",
                control_file=self.control_file.path,
            )

        # Data files from different directories may share a name
        name = data_file.replace("\\", "/").rsplit("/", 1)[-1]
        destination = self.dfs.join(self.staging_directory, f"{index:05d}_{name}")

        self.dfs.copy_from_local(data_file, destination)
        log.debug("data_file_staged", source=data_file, destination=destination)

    def cleanup(self) -> None:
        """
        Settle the control file, then remove the staging artifacts.

        The control file is acknowledged (loaded) or quarantined (failed)
        before anything else can fail, so a loaded batch is never resumed
        and inserted again. Runs after both successful and failed batches.
        """
        try:
            if self.succeeded:
                self.control_file.acknowledge()
            else:
                self.control_file.quarantine()
        except Exception as e:
            raise BatchFailure(
                f"control file {self.control_file.path} could not be settled: {e}",
                control_file=self.control_file.path,
            ) from e

        try:
            self.drop_staging_table.execute()

            if self.dfs.exists(self.staging_directory) and not self.dfs.delete(
                self.staging_directory, recursive=True
            ):
                raise BatchFailure(
                    f"staging directory {self.staging_directory} could not be deleted",
                    control_file=self.control_file.path,
                )
        except BatchFailure:
            raise
        except Exception as e:
            raise BatchFailure(
                f"cleanup for {self.control_file.path} failed: {e}",
                control_file=self.control_file.path,
            ) from e

        log.info("batch_cleaned_up", control_file=self.control_file.path, succeeded=self.succeeded)
