import concurrent.futures
import json
import pathlib as pl

import filelock
import pytest

from cluster_lifecycle.cluster_management import cluster_spec
from cluster_lifecycle.cluster_management import common
from cluster_lifecycle.cluster_management import errors
from cluster_lifecycle.cluster_management import spec_store
from cluster_lifecycle.utils import locking

CLUSTER = "hbase1"


def _spec(name: str = CLUSTER, **kwargs) -> cluster_spec.ClusterSpecification:
    spec = cluster_spec.ClusterSpecification(name=name, **kwargs)
    spec.set_desired_instance_count(common.ROLE_WORKER, 2)
    return spec


class TestFileStore:
    def test_create_exclusive(self, tmp_path: pl.Path):
        store = spec_store.FileStore(tmp_path)
        store.create_exclusive("c1/record", b"first")
        with pytest.raises(FileExistsError):
            store.create_exclusive("c1/record", b"second")
        assert store.read("c1/record") == b"first"

    def test_write_replaces(self, tmp_path: pl.Path):
        store = spec_store.FileStore(tmp_path)
        store.create_exclusive("c1/record", b"first")
        store.write("c1/record", b"second")
        assert store.read("c1/record") == b"second"
        # No temporary files left behind
        assert not [p for p in (tmp_path / "c1").iterdir() if p.name.startswith(".record.")]

    def test_read_missing(self, tmp_path: pl.Path):
        store = spec_store.FileStore(tmp_path)
        with pytest.raises(FileNotFoundError):
            store.read("c1/record")
        assert not (tmp_path / "c1").exists()

    def test_delete(self, tmp_path: pl.Path):
        store = spec_store.FileStore(tmp_path)
        store.create_exclusive("c1/record", b"data")
        store.create_exclusive("c2/sub/record", b"data")

        assert store.delete("c1/record")
        assert not store.exists("c1/record")
        assert not (tmp_path / "c1" / "record.lock").exists()
        assert not store.delete("c1/record")

        assert store.delete("c2")
        assert not store.exists("c2/sub/record")

    def test_concurrent_create(self, tmp_path: pl.Path):
        store = spec_store.FileStore(tmp_path)

        def _create(num: int) -> bool:
            try:
                store.create_exclusive("c1/record", f"{num}".encode())
            except FileExistsError:
                return False
            return True

        with concurrent.futures.ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(_create, range(16)))

        assert results.count(True) == 1


class TestSpecificationStore:
    def test_create_and_load(self, store: spec_store.SpecificationStore):
        spec = _spec(state=cluster_spec.ClusterState.SUBMITTED, zk_hosts="zk1")
        store.create(CLUSTER, spec)

        assert store.exists(CLUSTER)
        assert store.spec_path(CLUSTER).name == common.CLUSTER_SPECIFICATION_FILE
        assert store.load(CLUSTER) == spec
        assert store.load_and_validate(CLUSTER) == spec

    def test_create_twice(self, store: spec_store.SpecificationStore):
        store.create(CLUSTER, _spec())
        with pytest.raises(errors.BadClusterStateError, match=common.E_ALREADY_EXISTS):
            store.create(CLUSTER, _spec())

    def test_create_after_destroy(self, store: spec_store.SpecificationStore):
        store.create(CLUSTER, _spec())
        assert store.destroy(CLUSTER)
        store.create(CLUSTER, _spec())
        assert store.exists(CLUSTER)

    def test_load_unknown(self, store: spec_store.SpecificationStore):
        with pytest.raises(errors.UnknownClusterError, match=CLUSTER):
            store.load(CLUSTER)

    @pytest.mark.parametrize(
        "content",
        (
            "not json",
            "[]",
            json.dumps({"name": CLUSTER, "state": 1}),
            json.dumps({"version": "1.0", "name": CLUSTER, "state": 1, "roles": []}),
        ),
    )
    def test_load_malformed(self, store: spec_store.SpecificationStore, content: str):
        path = store.spec_path(CLUSTER)
        path.parent.mkdir(parents=True)
        path.write_text(content, encoding="utf-8")
        with pytest.raises(errors.SpecValidationError, match=CLUSTER):
            store.load(CLUSTER)

    def test_load_and_validate_incomplete(self, store: spec_store.SpecificationStore):
        store.create(CLUSTER, _spec())
        with pytest.raises(errors.BadClusterStateError, match="incomplete"):
            store.load_and_validate(CLUSTER)

    def test_load_and_validate_wrong_name(self, store: spec_store.SpecificationStore):
        store.create(CLUSTER, _spec(name="other", state=cluster_spec.ClusterState.SUBMITTED))
        with pytest.raises(errors.SpecValidationError, match="belongs to cluster"):
            store.load_and_validate(CLUSTER)

    def test_update(self, store: spec_store.SpecificationStore):
        spec = _spec()
        store.create(CLUSTER, spec)
        spec.set_desired_instance_count(common.ROLE_WORKER, 5)
        assert store.update(CLUSTER, spec)
        assert store.load(CLUSTER).get_desired_instance_count(common.ROLE_WORKER) == 5

    def test_update_missing(self, store: spec_store.SpecificationStore):
        assert not store.update(CLUSTER, _spec())
        assert not store.exists(CLUSTER)

    def test_destroy_missing(self, store: spec_store.SpecificationStore):
        assert not store.destroy(CLUSTER)

    def test_copy_conf_dir(self, store: spec_store.SpecificationStore, conf_dir: pl.Path):
        store.create(CLUSTER, _spec())
        store.copy_conf_dir(src_dir=conf_dir, cluster_name=CLUSTER)
        for dest in (store.orig_conf_dir(CLUSTER), store.generated_conf_dir(CLUSTER)):
            assert (dest / "hbase-site.xml").read_text(encoding="utf-8") == "<configuration/>\n"
        assert store.path_exists(store.generated_conf_dir(CLUSTER))

        assert store.destroy(CLUSTER)
        assert not store.cluster_dir(CLUSTER).exists()


class TestSpecificationStoreFailures:
    def test_store_under_regular_file(self, tmp_path: pl.Path):
        blocker = tmp_path / "blocker"
        blocker.write_text("", encoding="utf-8")
        store = spec_store.SpecificationStore(spec_store.FileStore(blocker / "store"))

        with pytest.raises(errors.BadClusterStateError, match=f"^{CLUSTER}: failed to save"):
            store.create(CLUSTER, _spec())

    def test_cluster_dir_is_regular_file(self, store: spec_store.SpecificationStore):
        cluster_dir = store.cluster_dir(CLUSTER)
        cluster_dir.parent.mkdir(parents=True)
        cluster_dir.write_text("", encoding="utf-8")

        with pytest.raises(errors.BadClusterStateError) as excinfo:
            store.create(CLUSTER, _spec())
        assert str(excinfo.value).startswith(f"{CLUSTER}: ")
        assert common.E_ALREADY_EXISTS not in str(excinfo.value)

    def test_load_locked(
        self, monkeypatch: pytest.MonkeyPatch, store: spec_store.SpecificationStore
    ):
        store.create(CLUSTER, _spec())
        get_file_lock = locking.get_file_lock
        monkeypatch.setattr(
            locking, "get_file_lock", lambda path: get_file_lock(path, timeout=0.05)
        )

        with filelock.FileLock(f"{store.spec_path(CLUSTER)}{locking.LOCK_SUFFIX}"):
            with pytest.raises(errors.BadClusterStateError, match=f"^{CLUSTER}: failed to read"):
                store.load(CLUSTER)
            assert not store.update(CLUSTER, _spec())

    def test_destroy_failure(
        self, monkeypatch: pytest.MonkeyPatch, store: spec_store.SpecificationStore
    ):
        store.create(CLUSTER, _spec())

        def _rmtree(path, *args, **kwargs):
            raise PermissionError(13, "Permission denied", str(path))

        monkeypatch.setattr(spec_store.shutil, "rmtree", _rmtree)
        with pytest.raises(errors.BadClusterStateError, match=f"^{CLUSTER}: failed to delete"):
            store.destroy(CLUSTER)
        assert store.exists(CLUSTER)

    def test_copy_missing_conf_dir(self, tmp_path: pl.Path, store: spec_store.SpecificationStore):
        store.create(CLUSTER, _spec())
        with pytest.raises(errors.BadClusterStateError, match=f"^{CLUSTER}: failed to copy"):
            store.copy_conf_dir(src_dir=tmp_path / "nonexistent", cluster_name=CLUSTER)
