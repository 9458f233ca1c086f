"""Durable store of cluster specifications.

All clusters live in a single store directory shared by every client process:

* `<cluster>/cluster.json`: the cluster specification
* `<cluster>/confdir`: the original configuration, as provided on create
* `<cluster>/generated`: configuration generated for the deployed cluster
* `<cluster>/database`: data directory of the deployed service

Exclusive creation of the specification file is the identity lock of a cluster name. While the
file exists, no other process can create a cluster of the same name.
"""

import logging
import os
import pathlib as pl
import shutil
import tempfile

import filelock

from cluster_lifecycle.cluster_management import cluster_spec
from cluster_lifecycle.cluster_management import common
from cluster_lifecycle.cluster_management import errors
from cluster_lifecycle.utils import locking
from cluster_lifecycle.utils import types as ttypes

LOGGER = logging.getLogger(__name__)


class FileStore:
    """Key/value store on top of a (shared) filesystem; keys are relative paths."""

    def __init__(self, root: ttypes.FileType) -> None:
        self.root = pl.Path(root).expanduser().resolve()

    def path(self, key: str) -> pl.Path:
        return self.root / key

    def create_exclusive(self, key: str, data: bytes) -> None:
        """Create the record, fail with `FileExistsError` if it already exists."""
        path = self.path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except FileExistsError as exc:
            # Only the exclusive open reports an existing record
            msg = f"Not a directory: {path.parent}"
            raise NotADirectoryError(msg) from exc
        with locking.get_file_lock(path), open(path, "xb") as out_fp:
            out_fp.write(data)
            out_fp.flush()
            os.fsync(out_fp.fileno())

    def read(self, key: str) -> bytes:
        """Read the record, fail with `FileNotFoundError` if it doesn't exist."""
        path = self.path(key)
        if not path.is_file():
            msg = f"No record at {path}"
            raise FileNotFoundError(msg)
        with locking.get_file_lock(path):
            return path.read_bytes()

    def write(self, key: str, data: bytes) -> None:
        """Overwrite the record atomically."""
        path = self.path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with locking.get_file_lock(path):
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
            try:
                with os.fdopen(fd, "wb") as out_fp:
                    out_fp.write(data)
                    out_fp.flush()
                    os.fsync(out_fp.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                pl.Path(tmp_name).unlink(missing_ok=True)
                raise

    def delete(self, key: str) -> bool:
        """Delete the record or the whole directory. Return False if there was nothing to delete."""
        path = self.path(key)
        if path.is_dir():
            shutil.rmtree(path)
            return True
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        pl.Path(f"{path}{locking.LOCK_SUFFIX}").unlink(missing_ok=True)
        return True

    def exists(self, key: str) -> bool:
        return self.path(key).exists()


def get_spec_key(cluster_name: str) -> str:
    return f"{cluster_name}/{common.CLUSTER_SPECIFICATION_FILE}"


class SpecificationStore:
    """Create, load, update and destroy cluster specifications."""

    def __init__(self, file_store: FileStore) -> None:
        self.file_store = file_store

    def cluster_dir(self, cluster_name: str) -> pl.Path:
        """Return directory of the given cluster."""
        return self.file_store.path(cluster_name)

    def spec_path(self, cluster_name: str) -> pl.Path:
        """Return path to the specification file of the given cluster."""
        return self.file_store.path(get_spec_key(cluster_name))

    def orig_conf_dir(self, cluster_name: str) -> pl.Path:
        """Return directory with the original configuration of the given cluster."""
        return self.cluster_dir(cluster_name) / common.ORIG_CONF_DIR_NAME

    def generated_conf_dir(self, cluster_name: str) -> pl.Path:
        """Return directory with the generated configuration of the given cluster."""
        return self.cluster_dir(cluster_name) / common.GENERATED_CONF_DIR_NAME

    def data_dir(self, cluster_name: str) -> pl.Path:
        return self.cluster_dir(cluster_name) / common.DATA_DIR_NAME

    def exists(self, cluster_name: str) -> bool:
        return self.file_store.exists(get_spec_key(cluster_name))

    def path_exists(self, path: ttypes.FileType) -> bool:
        return pl.Path(path).exists()

    def create(self, cluster_name: str, spec: cluster_spec.ClusterSpecification) -> None:
        """Save a new specification; fail if a cluster of the same name already exists."""
        try:
            self.file_store.create_exclusive(
                get_spec_key(cluster_name), spec.to_json().encode("utf-8")
            )
        except FileExistsError as exc:
            msg = f"{cluster_name}: {common.E_ALREADY_EXISTS} :{self.spec_path(cluster_name)}"
            raise errors.BadClusterStateError(msg) from exc
        except (OSError, filelock.Timeout) as exc:
            spec_path = self.spec_path(cluster_name)
            msg = f"{cluster_name}: failed to save specification {spec_path}: {exc}"
            raise errors.BadClusterStateError(msg) from exc
        LOGGER.debug(f"Saved specification of '{cluster_name}' to {self.spec_path(cluster_name)}")

    def load(self, cluster_name: str) -> cluster_spec.ClusterSpecification:
        """Load a specification; fail with `UnknownClusterError` if there's none."""
        try:
            content = self.file_store.read(get_spec_key(cluster_name))
        except FileNotFoundError as exc:
            msg = f"{common.E_UNKNOWN_CLUSTER}'{cluster_name}': no specification at " + str(
                self.spec_path(cluster_name)
            )
            raise errors.UnknownClusterError(msg) from exc
        except (OSError, filelock.Timeout) as exc:
            spec_path = self.spec_path(cluster_name)
            msg = f"{cluster_name}: failed to read specification {spec_path}: {exc}"
            raise errors.BadClusterStateError(msg) from exc

        try:
            return cluster_spec.ClusterSpecification.from_json(content)
        except errors.SpecValidationError as exc:
            msg = f"{cluster_name}: invalid specification {self.spec_path(cluster_name)}: {exc}"
            raise errors.SpecValidationError(msg) from exc

    def load_and_validate(self, cluster_name: str) -> cluster_spec.ClusterSpecification:
        """Load a specification that is usable for a deployment."""
        spec = self.load(cluster_name)
        if spec.state == cluster_spec.ClusterState.INCOMPLETE:
            msg = f"{common.E_INCOMPLETE_CLUSTER_SPEC}{self.spec_path(cluster_name)}"
            raise errors.BadClusterStateError(msg)
        if spec.name != cluster_name:
            msg = (
                f"{cluster_name}: specification {self.spec_path(cluster_name)} "
                f"belongs to cluster '{spec.name}'"
            )
            raise errors.SpecValidationError(msg)
        return spec

    def update(self, cluster_name: str, spec: cluster_spec.ClusterSpecification) -> bool:
        """Overwrite an existing specification.

        Return False if the specification couldn't be saved.
        """
        if not self.exists(cluster_name):
            LOGGER.warning(f"No specification of '{cluster_name}' to update")
            return False
        try:
            self.file_store.write(get_spec_key(cluster_name), spec.to_json().encode("utf-8"))
        except (OSError, filelock.Timeout) as exc:
            LOGGER.warning(f"Failed to save specification of '{cluster_name}': {exc}")
            return False
        return True

    def destroy(self, cluster_name: str) -> bool:
        """Delete the cluster directory including the specification."""
        try:
            deleted = self.file_store.delete(cluster_name)
        except OSError as exc:
            msg = f"{cluster_name}: failed to delete {self.cluster_dir(cluster_name)}: {exc}"
            raise errors.BadClusterStateError(msg) from exc
        if not deleted:
            LOGGER.info(f"Nothing to delete for cluster '{cluster_name}'")
        return deleted

    def copy_conf_dir(self, src_dir: ttypes.FileType, cluster_name: str) -> None:
        """Copy original configuration into the cluster directory, seed the generated one."""
        orig_conf_dir = self.orig_conf_dir(cluster_name)
        generated_conf_dir = self.generated_conf_dir(cluster_name)
        try:
            shutil.copytree(src_dir, orig_conf_dir, dirs_exist_ok=True)
            shutil.copytree(orig_conf_dir, generated_conf_dir, dirs_exist_ok=True)
        except OSError as exc:
            msg = f"{cluster_name}: failed to copy configuration from {src_dir}: {exc}"
            raise errors.BadClusterStateError(msg) from exc
