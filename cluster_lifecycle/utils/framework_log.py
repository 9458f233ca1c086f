import functools
import logging
import pathlib as pl
import time

from cluster_lifecycle.utils import configuration


@functools.cache
def framework_logger() -> logging.Logger:
    """Get logger for the operations log file.

    The logger records lifecycle events (cluster created, destroyed, a create/destroy race
    detected) so they can be audited later. When `OPERATIONS_LOG` is not set, the records just
    propagate to the root logger.
    """
    logger = logging.getLogger("cluster_lifecycle.operations")
    logger.setLevel(logging.INFO)

    if not configuration.OPERATIONS_LOG:
        return logger

    class UTCFormatter(logging.Formatter):
        converter = time.gmtime  # type: ignore[assignment]

    formatter = UTCFormatter("%(asctime)s %(levelname)s %(message)s")
    log_path = pl.Path(configuration.OPERATIONS_LOG)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path)
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    return logger
