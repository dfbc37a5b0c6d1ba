"""
Startup validation of the staging directory.

Proves the loader can create and delete the staging directory before any
batch work begins, without leaving anything behind that could be taken
for real data.
"""

import structlog

from datapump.errors import StagingConflict, StagingUnavailable
from datapump.storage import FileSystem

log = structlog.get_logger()


def validate_staging_directory(fs: FileSystem, path: str) -> str:
    """
    Check that the staging directory can be created and deleted.

    An existing directory is never touched: it may hold data from a batch
    that was not completed, so an operator has to remove it.

    Args:
        fs: Filesystem holding the staging directory
        path: Future staging directory

    Returns:
        The canonical absolute form of path. The directory does not exist
        when this returns.

    Raises:
        StagingConflict: If the directory already exists
        StagingUnavailable: If the directory could not be created or deleted
    """
    if fs.exists(path):
        error = StagingConflict(path)
        log.error("staging_directory_exists", path=path, error=str(error))
        raise error

    if not fs.mkdirs(path):
        log.error("staging_directory_not_created", path=path)
        raise StagingUnavailable(f"staging directory {path} could not be created")

    resolved = fs.resolve_path(path)

    if not fs.delete(path, recursive=True):
        log.error("staging_directory_not_deleted", path=path)
        raise StagingUnavailable(f"staging directory {path} could not be deleted")

    log.info("staging_directory_validated", path=resolved)
    return resolved
