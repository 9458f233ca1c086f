import dataclasses
import itertools
import json
import os
import pathlib as pl

if not os.environ.get("CLUSTER_LIFECYCLE_USER"):
    os.environ["CLUSTER_LIFECYCLE_USER"] = "tester"

import pytest  # noqa: E402

from cluster_lifecycle.cluster_management import broker as cbroker  # noqa: E402
from cluster_lifecycle.cluster_management import common  # noqa: E402
from cluster_lifecycle.cluster_management import coordinator as ccoordinator  # noqa: E402
from cluster_lifecycle.cluster_management import errors  # noqa: E402
from cluster_lifecycle.cluster_management import launch  # noqa: E402
from cluster_lifecycle.cluster_management import spec_store  # noqa: E402

TEST_USER = "tester"
COORDINATOR_HOST = "coordinator.example.com"
COORDINATOR_PORT = 8090


class FakeBroker:
    """In-memory resource broker; submitted applications stay in `submit_state`."""

    def __init__(self, user: str = TEST_USER) -> None:
        self.user = user
        self.submit_state = cbroker.AppState.ACCEPTED
        self.submit_final_status = cbroker.FinalStatus.UNDEFINED
        self.apps: dict[str, cbroker.InstanceReport] = {}
        self.submitted: list[launch.LaunchDescriptor] = []
        self.killed: list[tuple[str, str]] = []
        self._counter = itertools.count(1)

    def _next_id(self) -> str:
        return f"application_1700000000000_{next(self._counter):04d}"

    def add_instance(
        self,
        name: str,
        state: cbroker.AppState,
        *,
        user: str | None = None,
        final_status: cbroker.FinalStatus = cbroker.FinalStatus.UNDEFINED,
        host: str = COORDINATOR_HOST,
        rpc_port: int = COORDINATOR_PORT,
    ) -> cbroker.InstanceReport:
        report = cbroker.InstanceReport(
            app_id=self._next_id(),
            name=name,
            user=user or self.user,
            state=state,
            final_status=final_status,
            host=host,
            rpc_port=rpc_port,
            app_type=common.APP_TYPE,
        )
        self.apps[report.app_id] = report
        return report

    def set_state(
        self,
        app_id: str,
        state: cbroker.AppState,
        final_status: cbroker.FinalStatus = cbroker.FinalStatus.UNDEFINED,
    ) -> None:
        self.apps[app_id] = dataclasses.replace(
            self.apps[app_id], state=state, final_status=final_status
        )

    def finish_all(self) -> None:
        for app_id in list(self.apps):
            self.set_state(app_id, cbroker.AppState.FINISHED, cbroker.FinalStatus.SUCCEEDED)

    def submit(self, descriptor: launch.LaunchDescriptor) -> str:
        self.submitted.append(descriptor)
        report = self.add_instance(
            descriptor.name, self.submit_state, final_status=self.submit_final_status
        )
        return report.app_id

    def get_report(self, app_id: str) -> cbroker.InstanceReport:
        try:
            return self.apps[app_id]
        except KeyError as exc:
            msg = f"Unknown application {app_id}"
            raise errors.UnknownClusterError(msg) from exc

    def list_by_type(self, app_type: str) -> list[cbroker.InstanceReport]:
        return [r for r in self.apps.values() if r.app_type == app_type]

    def kill(self, app_id: str, reason: str = "") -> None:
        self.killed.append((app_id, reason))
        self.set_state(app_id, cbroker.AppState.KILLED, cbroker.FinalStatus.KILLED)


class FakeCoordinatorRpc:
    """In-memory deployed coordinator."""

    def __init__(self) -> None:
        self.stop_calls = 0
        self.flexed: list[str] = []
        self.flex_changes = True
        self.role_counts: dict[str, str] = {}
        self.status_json = "{}"
        self.nodes: dict[str, list[str]] = {}
        self.node_json: dict[str, str] = {}

    def stop_cluster(self) -> None:
        self.stop_calls += 1

    def flex_cluster(self, spec_json: str) -> bool:
        self.flexed.append(spec_json)
        roles = json.loads(spec_json)["roles"]
        role_counts = {r: opts.get(common.ROLE_INSTANCES, "0") for r, opts in roles.items()}
        changed = role_counts != self.role_counts
        self.role_counts = role_counts
        return changed and self.flex_changes

    def get_cluster_status(self) -> str:
        return self.status_json

    def list_nodes_by_role(self, role: str) -> list[str]:
        return list(self.nodes.get(role, []))

    def get_node(self, uuid: str) -> str:
        try:
            return self.node_json[uuid]
        except KeyError as exc:
            msg = f"Unknown node {uuid}"
            raise errors.UnknownClusterError(msg) from exc


@pytest.fixture
def store(tmp_path: pl.Path) -> spec_store.SpecificationStore:
    return spec_store.SpecificationStore(spec_store.FileStore(tmp_path / "store"))


@pytest.fixture
def conf_dir(tmp_path: pl.Path) -> pl.Path:
    conf = tmp_path / "conf"
    conf.mkdir()
    (conf / "hbase-site.xml").write_text("<configuration/>\n", encoding="utf-8")
    return conf


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def rpc() -> FakeCoordinatorRpc:
    return FakeCoordinatorRpc()


@pytest.fixture
def config() -> ccoordinator.CoordinatorConfig:
    return ccoordinator.CoordinatorConfig(user=TEST_USER, accept_timeout=1, poll_interval=0.01)


@pytest.fixture
def coordinator(
    store: spec_store.SpecificationStore,
    broker: FakeBroker,
    rpc: FakeCoordinatorRpc,
    config: ccoordinator.CoordinatorConfig,
) -> ccoordinator.LifecycleCoordinator:
    return ccoordinator.LifecycleCoordinator(
        store=store, broker=broker, config=config, connector=lambda report: rpc
    )


@pytest.fixture
def create_request(conf_dir: pl.Path) -> ccoordinator.CreateRequest:
    return ccoordinator.CreateRequest(
        roles={"worker": 2, "master": 1},
        conf_dir=conf_dir,
        app_home="/opt/hbase",
        zk_hosts="zk1.example.com,zk2.example.com",
    )
