"""Cluster lifecycle manager configuration.

Values are read from environment once, on import. Only the CLI layer reads this module, the
lifecycle core gets its settings passed explicitly as `CoordinatorConfig`.
"""

import getpass
import os
import pathlib as pl

# Root of the durable store, one directory per cluster name
STORE_DIR = pl.Path(os.environ.get("CLUSTER_LIFECYCLE_DIR") or "~/.cluster-lifecycle")
STORE_DIR = STORE_DIR.expanduser().resolve()

# Base URL of the ResourceManager REST API, e.g. `http://rm.example.com:8088`
RESOURCE_MANAGER_URL = (os.environ.get("RESOURCE_MANAGER_URL") or "").rstrip("/")

# `host:port` of the RM scheduler, passed to the deployed coordinator
RM_SCHEDULER_ADDRESS = os.environ.get("RM_SCHEDULER_ADDRESS") or ""

# URL of the shared filesystem, passed to the deployed coordinator
FILESYSTEM_URL = os.environ.get("FILESYSTEM_URL") or STORE_DIR.as_uri()

USER = os.environ.get("CLUSTER_LIFECYCLE_USER") or getpass.getuser()

# Seconds to wait for a submitted application to get accepted
ACCEPT_TIMEOUT = float(os.environ.get("ACCEPT_TIMEOUT") or 60)
if ACCEPT_TIMEOUT <= 0:
    msg = f"Invalid ACCEPT_TIMEOUT: {ACCEPT_TIMEOUT}"
    raise RuntimeError(msg)

# Seconds between two queries of the application state
POLL_INTERVAL = float(os.environ.get("POLL_INTERVAL") or 1)
if POLL_INTERVAL <= 0:
    msg = f"Invalid POLL_INTERVAL: {POLL_INTERVAL}"
    raise RuntimeError(msg)

# Seconds before a call to the deployed coordinator is abandoned
RPC_TIMEOUT = float(os.environ.get("RPC_TIMEOUT") or 15)

AM_QUEUE = os.environ.get("AM_QUEUE") or "default"
AM_PRIORITY = int(os.environ.get("AM_PRIORITY") or 0)

# Resolve OPERATIONS_LOG
OPERATIONS_LOG: str | pl.Path = os.environ.get("OPERATIONS_LOG") or ""
if OPERATIONS_LOG:
    OPERATIONS_LOG = pl.Path(OPERATIONS_LOG).expanduser().resolve()
