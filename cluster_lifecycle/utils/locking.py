import logging

from filelock import FileLock

from cluster_lifecycle.utils import types as ttypes

# Suppress messages from filelock
logging.getLogger("filelock").setLevel(logging.WARNING)

LOCK_SUFFIX = ".lock"

# Seconds to wait for a lock held by another process
LOCK_TIMEOUT = 30


def get_file_lock(path: ttypes.FileType, timeout: float = LOCK_TIMEOUT) -> FileLock:
    """Return a lock guarding the given file against concurrent rewrites by other processes."""
    return FileLock(f"{path}{LOCK_SUFFIX}", timeout=timeout)
