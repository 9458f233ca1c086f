import pathlib as pl

import pytest

from cluster_lifecycle import cli
from cluster_lifecycle.cluster_management import broker as cbroker
from cluster_lifecycle.cluster_management import cluster_spec
from cluster_lifecycle.cluster_management import common
from cluster_lifecycle.cluster_management import coordinator as ccoordinator
from cluster_lifecycle.cluster_management import errors
from cluster_lifecycle.cluster_management import spec_store


@pytest.fixture
def patched_cli(monkeypatch: pytest.MonkeyPatch, coordinator):
    monkeypatch.setattr(cli, "get_coordinator", lambda wait_time=0: coordinator)
    return coordinator


def test_unimplemented_action():
    assert cli.main(["resize", "hbase1"]) == errors.ExitCodes.UNIMPLEMENTED


def test_help(capsys: pytest.CaptureFixture):
    assert cli.main(["help"]) == errors.ExitCodes.SUCCESS
    assert "create" in capsys.readouterr().out


def test_create_flex_freeze_destroy(patched_cli, broker, store, rpc, conf_dir: pl.Path):
    exit_code = cli.main(
        [
            "create",
            "hbase1",
            "--confdir",
            str(conf_dir),
            "--apphome",
            "/opt/hbase",
            "--zkhosts",
            "zk1",
            "--role",
            "worker=2",
            "--roleopt",
            "worker:jvm.heapsize=512",
            "--option",
            "site.hbase.rootdir=/hbase",
        ]
    )
    assert exit_code == errors.ExitCodes.SUCCESS
    spec = store.load("hbase1")
    assert spec.get_desired_instance_count(common.ROLE_WORKER) == 2
    assert spec.get_role_opt(common.ROLE_WORKER, common.JVM_HEAP) == "512"
    assert spec.options["site.hbase.rootdir"] == "/hbase"

    assert cli.main(["flex", "hbase1", "--role", "worker=4"]) == errors.ExitCodes.SUCCESS
    assert store.load("hbase1").get_desired_instance_count(common.ROLE_WORKER) == 4
    assert len(rpc.flexed) == 1

    assert cli.main(["destroy", "hbase1"]) == errors.ExitCodes.BAD_CLUSTER_STATE
    assert cli.main(["freeze", "hbase1"]) == errors.ExitCodes.SUCCESS
    assert rpc.stop_calls == 1

    broker.finish_all()
    assert cli.main(["destroy", "hbase1"]) == errors.ExitCodes.SUCCESS
    assert not store.exists("hbase1")


def test_error_exit_codes(patched_cli, broker):
    assert cli.main(["exists", "hbase1"]) == errors.ExitCodes.UNKNOWN_CLUSTER
    assert cli.main(["destroy", "Bad_Name"]) == errors.ExitCodes.BAD_ARGUMENTS
    assert cli.main(["thaw", "hbase1"]) == errors.ExitCodes.UNKNOWN_CLUSTER
    assert cli.main(["create", "hbase1"]) == errors.ExitCodes.BAD_ARGUMENTS

    broker.add_instance("hbase1", cbroker.AppState.RUNNING, host="")
    assert cli.main(["status", "hbase1"]) == errors.ExitCodes.CONNECTIVITY_PROBLEM


def test_list_and_status(patched_cli, broker, rpc, capsys: pytest.CaptureFixture):
    report = broker.add_instance("hbase1", cbroker.AppState.RUNNING)
    rpc.status_json = cluster_spec.ClusterSpecification(
        name="hbase1",
        state=cluster_spec.ClusterState.LIVE,
        client_properties={"hbase.zookeeper.quorum": "zk1"},
    ).to_json()

    assert cli.main(["list"]) == errors.ExitCodes.SUCCESS
    assert report.app_id in capsys.readouterr().out

    assert cli.main(["list", "nonexistent"]) == errors.ExitCodes.UNKNOWN_CLUSTER

    assert cli.main(["status", "hbase1"]) == errors.ExitCodes.SUCCESS
    status = cluster_spec.ClusterSpecification.from_json(capsys.readouterr().out)
    assert status.state == cluster_spec.ClusterState.LIVE

    assert cli.main(["getconf", "hbase1", "--format", "properties"]) == errors.ExitCodes.SUCCESS
    assert "hbase.zookeeper.quorum=zk1" in capsys.readouterr().out

    assert cli.main(["getconf", "hbase1", "--format", "json"]) == errors.ExitCodes.BAD_ARGUMENTS
    assert cli.main(["exists", "hbase1"]) == errors.ExitCodes.SUCCESS


def test_store_failure_exit_code(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pl.Path,
    broker,
    rpc,
    config,
    conf_dir: pl.Path,
    caplog: pytest.LogCaptureFixture,
):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    coordinator = ccoordinator.LifecycleCoordinator(
        store=spec_store.SpecificationStore(spec_store.FileStore(blocker / "store")),
        broker=broker,
        config=config,
        connector=lambda report: rpc,
    )
    monkeypatch.setattr(cli, "get_coordinator", lambda wait_time=0: coordinator)

    argv = ["create", "hbase1", "--confdir", str(conf_dir), "--apphome", "/opt/hbase"]
    exit_code = cli.main([*argv, "--zkhosts", "zk1"])
    assert exit_code == errors.ExitCodes.BAD_CLUSTER_STATE
    assert "hbase1: failed to save" in caplog.text
    assert not broker.submitted


def test_output_file_failure(patched_cli, broker, rpc, tmp_path: pl.Path):
    broker.add_instance("hbase1", cbroker.AppState.RUNNING)
    rpc.status_json = cluster_spec.ClusterSpecification(name="hbase1").to_json()
    out_file = tmp_path / "nonexistent" / "status.json"

    exit_code = cli.main(["status", "hbase1", "--out", str(out_file)])
    assert exit_code == errors.ExitCodes.BAD_CLUSTER_STATE
    assert not out_file.exists()
