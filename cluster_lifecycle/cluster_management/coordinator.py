"""Lifecycle operations on clusters: create, destroy, freeze, thaw, flex and queries.

The `LifecycleCoordinator` works with three collaborators: the specification store, the
resource broker and the deployed coordinator of a running cluster.

Create and destroy both check the broker for a live instance of the cluster before acting. The
check and the action are not atomic, the broker state can change in between. No distributed
lock is attempted; instead the conflict is detected afterwards and reported as
`BadClusterStateError`, never resolved silently:

* destroy re-checks for a live instance after deleting the specification;
* create re-checks right before submission and fails if the specification disappeared during
  the setup.

The specification is never cached, every operation loads it again as flex, thaw or destroy can
run in a different process than the create did.
"""

import dataclasses
import enum
import logging
import pathlib as pl
import time
import typing as tp
from xml.etree import ElementTree

from cluster_lifecycle.cluster_management import broker as cbroker
from cluster_lifecycle.cluster_management import cluster_spec
from cluster_lifecycle.cluster_management import common
from cluster_lifecycle.cluster_management import coordinator_rpc
from cluster_lifecycle.cluster_management import errors
from cluster_lifecycle.cluster_management import launch
from cluster_lifecycle.cluster_management import provider as cprovider
from cluster_lifecycle.cluster_management import spec_store
from cluster_lifecycle.cluster_management import state_poller
from cluster_lifecycle.utils import framework_log
from cluster_lifecycle.utils import helpers
from cluster_lifecycle.utils import types as ttypes

LOGGER = logging.getLogger(__name__)

FORMAT_XML = "xml"
FORMAT_PROPERTIES = "properties"

DEFAULT_ZK_PORT = 2181


@dataclasses.dataclass(frozen=True)
class CoordinatorConfig:
    """Settings of the lifecycle operations, passed explicitly by the caller."""

    user: str
    accept_timeout: float = 60
    poll_interval: float = state_poller.DEFAULT_POLL_INTERVAL
    # Seconds to wait for a submitted cluster to get running, 0 means don't wait
    wait_time: float = 0
    rm_address: str = ""
    filesystem_url: str = ""
    am_queue: str = "default"
    am_priority: int = 0


@dataclasses.dataclass
class CreateRequest:
    """Inputs of the create operation."""

    roles: dict[str, int] = dataclasses.field(default_factory=dict)
    role_options: dict[str, dict[str, str]] = dataclasses.field(default_factory=dict)
    options: dict[str, str] = dataclasses.field(default_factory=dict)
    conf_dir: ttypes.FileType | None = None
    image: str = ""
    app_home: str = ""
    zk_hosts: str = ""
    zk_port: int = DEFAULT_ZK_PORT
    zk_path: str = ""
    master_heap: int = common.DEF_HEAP_SIZE
    worker_heap: int = common.DEF_HEAP_SIZE
    master_info_port: int = -1
    worker_info_port: int = -1


class FlexOutcome(enum.Enum):
    CHANGED = "changed"
    UNCHANGED = "no-op: size unchanged"
    NOT_RUNNING = "no-op: not running"

    @property
    def changed(self) -> bool:
        return self is FlexOutcome.CHANGED


def validate_cluster_name(cluster_name: str | None) -> str:
    if not cluster_name or not helpers.is_cluster_name_valid(cluster_name):
        msg = f"Illegal cluster name: {cluster_name}"
        raise errors.BadArgumentsError(msg)
    return cluster_name


def find_cluster_in_instance_list(
    instances: tp.Iterable[cbroker.InstanceReport], cluster_name: str
) -> cbroker.InstanceReport | None:
    """Find the instance of the cluster; a live instance outranks a terminated one."""
    found = None
    found_live = None
    for report in instances:
        if report.name != cluster_name:
            continue
        found = report
        if report.is_live:
            found_live = report
    return found_live or found


class LifecycleCoordinator:
    """Orchestrates lifecycle operations of clusters."""

    def __init__(
        self,
        store: spec_store.SpecificationStore,
        broker: cbroker.ResourceBroker,
        *,
        config: CoordinatorConfig,
        connector: coordinator_rpc.ConnectorType | None = None,
        provider: cprovider.ClusterProvider | None = None,
    ) -> None:
        self.store = store
        self.broker = broker
        self.config = config
        self.connector = connector or coordinator_rpc.connect
        self.provider = provider or cprovider.ClusterProvider()
        self.poller = state_poller.StatePoller(interval=config.poll_interval)
        self.app_id = ""

    # Queries against the resource broker

    def list_instances(self, user: str | None = None) -> list[cbroker.InstanceReport]:
        """List instances of all clusters belonging to `user`, or to all users if `None`."""
        instances = self.broker.list_by_type(common.APP_TYPE)
        return [r for r in instances if user is None or r.user == user]

    def find_all_instances(
        self, cluster_name: str, user: str | None = None
    ) -> list[cbroker.InstanceReport]:
        return [r for r in self.list_instances(user=user) if r.name == cluster_name]

    def find_all_live_instances(
        self, cluster_name: str, user: str | None = None
    ) -> list[cbroker.InstanceReport]:
        return [r for r in self.find_all_instances(cluster_name, user=user) if r.is_live]

    def find_instance(
        self, cluster_name: str, user: str | None = None
    ) -> cbroker.InstanceReport | None:
        return find_cluster_in_instance_list(self.list_instances(user=user), cluster_name)

    def verify_no_live_clusters(self, cluster_name: str, *, race_check: bool = False) -> None:
        """Fail if a cluster of the name is live or starting up."""
        existing = self.find_all_live_instances(cluster_name)
        if not existing:
            return
        race_str = f" ({common.E_DESTROY_CREATE_RACE})" if race_check else ""
        msg = f"{cluster_name}: {common.E_CLUSTER_RUNNING}{race_str} :{existing[0].to_str()}"
        if race_check:
            framework_log.framework_logger().error(msg)
        raise errors.BadClusterStateError(msg)

    # Create / thaw

    def _build_role_map(self, request: CreateRequest) -> dict[str, dict[str, str]]:
        role_map: dict[str, dict[str, str]] = {}
        for role in self.provider.get_roles():
            role_opts = self.provider.create_default_cluster_role(role.name)
            default_count = int(role_opts.get(common.ROLE_INSTANCES) or 0)
            try:
                count = helpers.parse_int(
                    f"count of role {role.name}",
                    request.roles.get(role.name),
                    default=default_count,
                    min_value=0,
                )
            except ValueError as exc:
                raise errors.BadArgumentsError(str(exc)) from exc
            role_opts[common.ROLE_INSTANCES] = str(count)
            role_map[role.name] = role_opts

        for role_name in request.roles:
            if role_name not in role_map:
                msg = f"Unknown role '{role_name}', supported: {sorted(role_map)}"
                raise errors.BadArgumentsError(msg)

        for role_name, heap, info_port in (
            (common.ROLE_MASTER, request.master_heap, request.master_info_port),
            (common.ROLE_WORKER, request.worker_heap, request.worker_info_port),
        ):
            if heap < common.MIN_HEAP_SIZE:
                msg = f"Requested heap size of {role_name} nodes is too low: {heap}"
                raise errors.BadArgumentsError(msg)
            role_map[role_name][common.YARN_MEMORY] = str(heap)
            role_map[role_name][common.JVM_HEAP] = str(heap)
            if info_port >= 0:
                role_map[role_name][common.APP_INFOPORT] = str(info_port)

        # Explicit role options win over the computed defaults
        for role_name, role_opts in request.role_options.items():
            helpers.merge_maps(role_map.setdefault(role_name, {}), role_opts)

        return role_map

    def _validate_create_request(self, request: CreateRequest) -> pl.Path:
        """Check inputs of the create operation, return the configuration directory."""
        if not request.zk_hosts:
            msg = "Required argument --zkhosts missing"
            raise errors.BadArgumentsError(msg)
        if request.conf_dir is None:
            msg = "Missing argument --confdir"
            raise errors.BadArgumentsError(msg)
        if not pl.Path(request.conf_dir).is_dir():
            msg = f"Configuration directory doesn't exist: {request.conf_dir}"
            raise errors.BadArgumentsError(msg)
        if request.image and request.app_home:
            msg = "Only one of --image and --apphome can be provided"
            raise errors.BadArgumentsError(msg)
        if not (request.image or request.app_home):
            msg = "Either --image or --apphome must be provided"
            raise errors.BadArgumentsError(msg)
        negative = {r: c for r, c in request.roles.items() if c < 0}
        if negative:
            msg = f"Requested number of instances is too low: {negative}"
            raise errors.BadArgumentsError(msg)
        if request.roles.get(common.ROLE_MASTER, 0) > 1:
            msg = "No more than one master is currently supported"
            raise errors.BadArgumentsError(msg)
        return pl.Path(request.conf_dir)

    def create(self, cluster_name: str, request: CreateRequest) -> errors.ExitCodes:
        """Create the cluster, saving the specification before anything else."""
        validate_cluster_name(cluster_name)
        # Best effort only, a cluster can still appear before the submission
        self.verify_no_live_clusters(cluster_name)
        conf_dir = self._validate_create_request(request)

        spec = cluster_spec.ClusterSpecification(
            name=cluster_name,
            state=cluster_spec.ClusterState.INCOMPLETE,
            create_time=int(time.time() * 1000),
            type=self.provider.name,
        )
        spec.options = helpers.merge_maps(
            self.provider.get_default_cluster_options(), request.options
        )
        spec.roles = self._build_role_map(request)
        spec.image_path = request.image
        spec.application_home = request.app_home
        spec.zk_hosts = request.zk_hosts
        spec.zk_port = request.zk_port
        spec.zk_path = request.zk_path or (
            f"/yarnapps_{common.APP_NAME}_{self.config.user}_{cluster_name}"
        )
        spec.origin_conf_path = str(self.store.orig_conf_dir(cluster_name))
        spec.generated_conf_path = str(self.store.generated_conf_dir(cluster_name))
        spec.data_path = str(self.store.data_dir(cluster_name))

        # Saving the incomplete specification reserves the cluster name
        self.store.create(cluster_name, spec)
        framework_log.framework_logger().info(
            f"{cluster_name}: specification created by '{self.config.user}'"
        )

        self.store.copy_conf_dir(src_dir=conf_dir, cluster_name=cluster_name)

        spec.state = cluster_spec.ClusterState.SUBMITTED
        if not self.store.update(cluster_name, spec):
            msg = (
                f"{cluster_name}: specification disappeared during setup "
                f"({common.E_DESTROY_CREATE_RACE})"
            )
            framework_log.framework_logger().error(msg)
            raise errors.BadClusterStateError(msg)

        return self.execute_cluster_creation(spec, race_check=True)

    def _path_must_exist(self, cluster_name: str, path: str) -> None:
        if not path or not self.store.path_exists(path):
            msg = f"{cluster_name}: {common.E_MISSING_PATH}{path}"
            raise errors.BadClusterStateError(msg)

    def build_launch_descriptor(
        self, spec: cluster_spec.ClusterSpecification
    ) -> launch.LaunchDescriptor:
        return launch.build_launch_descriptor(
            spec,
            cluster_uri=self.store.cluster_dir(spec.name).as_uri(),
            provider=self.provider,
            rm_address=self.config.rm_address,
            filesystem_url=self.config.filesystem_url,
            queue=self.config.am_queue,
            priority=self.config.am_priority,
        )

    def execute_cluster_creation(
        self, spec: cluster_spec.ClusterSpecification, *, race_check: bool = False
    ) -> errors.ExitCodes:
        """Submit the cluster to the resource broker; shared by create and thaw."""
        cluster_name = validate_cluster_name(spec.name)
        self.verify_no_live_clusters(cluster_name, race_check=race_check)

        self._path_must_exist(cluster_name, spec.generated_conf_path)
        self._path_must_exist(cluster_name, spec.origin_conf_path)
        if spec.image_path:
            self._path_must_exist(cluster_name, spec.image_path)
        elif not spec.application_home:
            msg = f"{cluster_name}: neither an image path nor a binary home dir were specified"
            raise errors.BadClusterStateError(msg)

        if LOGGER.isEnabledFor(logging.DEBUG):
            for role_name, role_opts in spec.roles.items():
                LOGGER.debug(f"Role: {role_name}\n{helpers.stringify_map(role_opts)}")

        descriptor = self.build_launch_descriptor(spec)
        self.app_id = self.broker.submit(descriptor)
        LOGGER.info(f"Submitted cluster '{cluster_name}' as application {self.app_id}")

        report = self.monitor_to_state(
            self.app_id, cbroker.AppState.ACCEPTED, self.config.accept_timeout
        )
        if report is state_poller.TIMED_OUT or report.state.is_terminal:
            return self.build_exit_code(self.app_id, report)

        if self.config.wait_time > 0:
            report = self.monitor_to_state(
                self.app_id, cbroker.AppState.RUNNING, self.config.wait_time
            )
            if report is state_poller.TIMED_OUT:
                return self.build_exit_code(self.app_id, report)
            if report.state != cbroker.AppState.RUNNING:
                self.kill_application(self.app_id, "cluster didn't get running")
                return self.build_exit_code(self.app_id, report)

        return errors.ExitCodes.SUCCESS

    def thaw(self, cluster_name: str) -> errors.ExitCodes:
        """Restart a frozen cluster from its saved specification."""
        validate_cluster_name(cluster_name)
        self.verify_no_live_clusters(cluster_name)
        spec = self.store.load_and_validate(cluster_name)
        return self.execute_cluster_creation(spec)

    # Destroy / freeze

    def destroy(self, cluster_name: str) -> errors.ExitCodes:
        """Delete the cluster specification and all the cluster files."""
        validate_cluster_name(cluster_name)
        self.verify_no_live_clusters(cluster_name)

        self.store.destroy(cluster_name)

        # Detect a cluster created while the destroy was in progress
        live = self.find_all_live_instances(cluster_name)
        if live:
            msg = f"{cluster_name}: {common.E_DESTROY_CREATE_RACE_CONDITION} :{live[0].to_str()}"
            framework_log.framework_logger().error(msg)
            raise errors.BadClusterStateError(msg)

        framework_log.framework_logger().info(f"{cluster_name}: destroyed")
        LOGGER.info(f"Destroyed cluster {cluster_name}")
        return errors.ExitCodes.SUCCESS

    def freeze(self, cluster_name: str, wait_time: float = 0) -> errors.ExitCodes:
        """Stop the cluster, keep its specification. Freezing a frozen cluster is not an error."""
        validate_cluster_name(cluster_name)
        LOGGER.debug(f"freeze({cluster_name}, {wait_time})")
        report = self.find_instance(cluster_name, user=self.config.user)
        if report is None:
            LOGGER.info(f"Cluster {cluster_name} not running")
            return errors.ExitCodes.SUCCESS
        if report.state.is_terminal:
            LOGGER.info(f"Cluster {cluster_name} is in a terminated state {report.state.name}")
            return errors.ExitCodes.SUCCESS

        self._connect(report).stop_cluster()
        LOGGER.debug("Cluster stop command issued")
        if wait_time > 0:
            result = self.monitor_to_state(report.app_id, cbroker.AppState.FINISHED, wait_time)
            if result is state_poller.TIMED_OUT:
                LOGGER.warning(f"Cluster {cluster_name} didn't stop within {wait_time}s")
        return errors.ExitCodes.SUCCESS

    # Flex

    def flex(
        self, cluster_name: str, desired_counts: tp.Mapping[str, int], *, persist: bool = True
    ) -> FlexOutcome:
        """Change the desired number of instances of roles."""
        validate_cluster_name(cluster_name)
        known_roles = {role.name for role in self.provider.get_roles()}
        unknown = sorted(r for r in desired_counts if r not in known_roles)
        if unknown:
            msg = f"Unknown roles {unknown}, supported: {sorted(known_roles)}"
            raise errors.BadArgumentsError(msg)
        negative = {r: c for r, c in desired_counts.items() if c < 0}
        if negative:
            msg = f"Requested number of instances is out of range: {negative}"
            raise errors.BadArgumentsError(msg)

        spec = self.store.load_and_validate(cluster_name)
        for role_name, count in desired_counts.items():
            spec.set_desired_instance_count(role_name, count)
        LOGGER.debug(f"Flexed cluster specification ({dict(desired_counts)}):\n{spec.to_json()}")

        if persist:
            # The live resize goes on even if the new size couldn't be saved
            if self.store.update(cluster_name, spec):
                LOGGER.info(f"New cluster size {dict(desired_counts)} persisted")
            else:
                LOGGER.warning(
                    f"Failed to save new cluster size to {self.store.spec_path(cluster_name)}"
                )

        report = self.find_instance(cluster_name, user=self.config.user)
        if report is None or not report.is_live:
            LOGGER.info("No running cluster to update")
            return FlexOutcome.NOT_RUNNING

        LOGGER.info(f"Flexing running cluster to size {dict(desired_counts)}")
        if self._connect(report).flex_cluster(spec.to_json()):
            LOGGER.info("Cluster size updated")
            return FlexOutcome.CHANGED
        LOGGER.info("Requested cluster size is the same as current size: no change")
        return FlexOutcome.UNCHANGED

    # Queries

    def _connect(self, report: cbroker.InstanceReport) -> coordinator_rpc.CoordinatorRpc:
        coordinator_rpc.check_address(report)
        return self.connector(report)

    def bond_to_cluster(self, cluster_name: str) -> coordinator_rpc.CoordinatorRpc:
        """Connect to the deployed coordinator of a running cluster."""
        report = self.find_instance(cluster_name, user=self.config.user)
        if report is None:
            raise unknown_cluster_error(cluster_name)
        return self._connect(report)

    def status(self, cluster_name: str) -> cluster_spec.ClusterSpecification:
        """Get the current state of a running cluster from its coordinator."""
        validate_cluster_name(cluster_name)
        status_json = self.bond_to_cluster(cluster_name).get_cluster_status()
        return cluster_spec.ClusterSpecification.from_json(status_json)

    def list_clusters(
        self, cluster_name: str | None = None, *, user: str | None = None
    ) -> list[cbroker.InstanceReport]:
        """List instances; only the best matching one when `cluster_name` is given."""
        instances = self.list_instances(user=user)
        if not cluster_name:
            LOGGER.info(f"Instances for {user or 'all users'}: {len(instances)}")
            return instances

        validate_cluster_name(cluster_name)
        report = find_cluster_in_instance_list(instances, cluster_name)
        if report is None:
            raise unknown_cluster_error(cluster_name)
        return [report]

    def exists(self, cluster_name: str) -> errors.ExitCodes:
        """Check that the cluster is live; fail with `UnknownClusterError` otherwise."""
        validate_cluster_name(cluster_name)
        report = self.find_instance(cluster_name, user=self.config.user)
        if report is None:
            LOGGER.info(f"Cluster {cluster_name} not found")
            raise unknown_cluster_error(cluster_name)
        if report.state.is_terminal:
            LOGGER.info(f"Cluster {cluster_name} found but is in state {report.state.name}")
            raise unknown_cluster_error(cluster_name)
        LOGGER.info(f"Cluster {cluster_name} is running: {report.to_str()}")
        return errors.ExitCodes.SUCCESS

    def getconf(
        self,
        cluster_name: str,
        fmt: str = FORMAT_XML,
        out_file: ttypes.FileType | None = None,
    ) -> str:
        """Get client configuration of a running cluster, optionally write it to a file."""
        validate_cluster_name(cluster_name)
        if fmt not in (FORMAT_XML, FORMAT_PROPERTIES):
            msg = f"Unknown format: {fmt}"
            raise errors.BadArgumentsError(msg)

        status = self.status(cluster_name)
        description = f"Cluster {cluster_name}"
        if fmt == FORMAT_XML:
            content = format_xml_configuration(status.client_properties, description)
        else:
            content = format_properties(status.client_properties, description)

        if out_file:
            pl.Path(out_file).write_text(content, encoding="utf-8")
        return content

    def list_nodes_by_role(self, cluster_name: str, role: str) -> list[str]:
        return self.bond_to_cluster(cluster_name).list_nodes_by_role(role)

    def get_node(self, cluster_name: str, uuid: str) -> coordinator_rpc.ClusterNode:
        node_json = self.bond_to_cluster(cluster_name).get_node(uuid)
        return coordinator_rpc.ClusterNode.from_json(node_json)

    def wait_for_role_instance_live(
        self, cluster_name: str, role: str, timeout: float
    ) -> cluster_spec.ClusterState:
        """Wait for an instance of the role to be live (or past it in its lifecycle)."""
        rpc = self.bond_to_cluster(cluster_name)
        LOGGER.info(f"Waiting {timeout}s for a live node in role {role}")

        def _probe() -> tuple[int, coordinator_rpc.ClusterNode | None]:
            nodes = rpc.list_nodes_by_role(role)
            if not nodes:
                return 0, None
            return len(nodes), coordinator_rpc.ClusterNode.from_json(rpc.get_node(nodes[0]))

        result = self.poller.poll(
            _probe,
            lambda r: r[1] is not None and r[1].state >= cluster_spec.ClusterState.LIVE,
            timeout,
        )
        if result is state_poller.TIMED_OUT:
            msg = f"Timeout after {timeout}s waiting for a live instance of role {role}"
            raise errors.WaitTimeoutError(msg)
        _, node = result
        return node.state if node else cluster_spec.ClusterState.INCOMPLETE

    # Monitoring

    def monitor_to_state(
        self, app_id: str, target: cbroker.AppState, timeout: float
    ) -> cbroker.InstanceReport | state_poller.Timeout:
        return state_poller.monitor_to_state(
            self.broker, app_id, target, timeout, poller=self.poller
        )

    def monitor_to_completion(self, timeout: float) -> errors.ExitCodes:
        """Wait for the last submitted application to finish, return its exit code."""
        if not self.app_id:
            msg = "No application was submitted by this client"
            raise errors.BadArgumentsError(msg)
        report = self.monitor_to_state(self.app_id, cbroker.AppState.FINISHED, timeout)
        return self.build_exit_code(self.app_id, report)

    def kill_application(self, app_id: str, reason: str) -> None:
        self.broker.kill(app_id, reason)

    def build_exit_code(
        self, app_id: str, report: cbroker.InstanceReport | state_poller.Timeout
    ) -> errors.ExitCodes:
        """Map the final report of the application to an exit code.

        On timeout the application is killed first.
        """
        if report is state_poller.TIMED_OUT:
            try:
                self.kill_application(app_id, "Reached client specified timeout for application")
            except errors.ClusterLifecycleError as exc:
                LOGGER.warning(f"Failed to kill application {app_id}: {exc}")
            return errors.ExitCodes.TIMED_OUT

        state = report.state
        final_status = report.final_status
        if state == cbroker.AppState.FINISHED:
            if final_status == cbroker.FinalStatus.SUCCEEDED:
                LOGGER.info("Application has completed successfully")
                return errors.ExitCodes.SUCCESS
            LOGGER.info(
                f"Application finished unsuccessfully. State={state.name}, "
                f"final status={final_status.value}"
            )
            return errors.ExitCodes.SERVICE_FINISHED_WITH_ERROR
        if state == cbroker.AppState.KILLED:
            LOGGER.info(f"Application did not finish. State={state.name}")
            return errors.ExitCodes.SERVICE_KILLED
        if state == cbroker.AppState.FAILED:
            LOGGER.info(f"Application failed. State={state.name}")
            return errors.ExitCodes.SERVICE_FAILED
        return errors.ExitCodes.SUCCESS


def unknown_cluster_error(cluster_name: str) -> errors.UnknownClusterError:
    return errors.UnknownClusterError(f"Cluster not found: '{cluster_name}'")


def format_xml_configuration(properties: tp.Mapping[str, str], description: str) -> str:
    """Format properties as a Hadoop-style `<configuration>` document."""
    root = ElementTree.Element("configuration")
    for key in sorted(properties):
        prop = ElementTree.SubElement(root, "property")
        ElementTree.SubElement(prop, "name").text = key
        ElementTree.SubElement(prop, "value").text = properties[key]
        ElementTree.SubElement(prop, "source").text = description
    ElementTree.indent(root)
    return ElementTree.tostring(root, encoding="unicode", xml_declaration=True) + "\n"


def format_properties(properties: tp.Mapping[str, str], description: str) -> str:
    """Format properties as a `key=value` properties file."""
    lines = [f"#{description}"]
    lines.extend(f"{key}={properties[key]}" for key in sorted(properties))
    return "\n".join(lines) + "\n"
