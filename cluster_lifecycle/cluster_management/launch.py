"""Assembly of the launch descriptor of the deployed coordinator.

Building the descriptor is pure data construction; the only side effect, the submission itself,
happens in the resource broker client.
"""

import dataclasses
import logging
import os
import shlex
import typing as tp

from cluster_lifecycle.cluster_management import cluster_spec
from cluster_lifecycle.cluster_management import common
from cluster_lifecycle.cluster_management import provider as cprovider
from cluster_lifecycle.utils import helpers

LOGGER = logging.getLogger(__name__)

COORDINATOR_ENTRY_POINT = "org.apache.hadoop.yarn.service.launcher.ServiceLauncher"
COORDINATOR_CLASSNAME = "org.apache.hadoop.hoya.yarn.appmaster.HoyaAppMaster"
JAVA_FORCE_IPV4 = "-Djava.net.preferIPv4Stack=true"
JAVA_HEADLESS = "-Djava.awt.headless=true"
LOG_DIR_EXPANSION_VAR = "<LOG_DIR>"

ARG_DEBUG = "--debug"
ARG_CLUSTER_URI = "--hoya-cluster-uri"
ARG_RM_ADDR = "--rm"
ARG_FILESYSTEM = "--filesystem"

DEFAULT_APP_CLASSPATH = (
    "$HADOOP_CONF_DIR",
    "$HADOOP_COMMON_HOME/share/hadoop/common/*",
    "$HADOOP_COMMON_HOME/share/hadoop/common/lib/*",
    "$HADOOP_HDFS_HOME/share/hadoop/hdfs/*",
    "$HADOOP_HDFS_HOME/share/hadoop/hdfs/lib/*",
    "$HADOOP_YARN_HOME/share/hadoop/yarn/*",
    "$HADOOP_YARN_HOME/share/hadoop/yarn/lib/*",
)


@dataclasses.dataclass(frozen=True)
class LaunchDescriptor:
    """Everything the resource broker needs to start the deployed coordinator."""

    name: str
    app_type: str
    resource: tp.Mapping[str, int]
    environment: tp.Mapping[str, str]
    classpath: str
    commands: tuple[str, ...]
    local_resources: tp.Mapping[str, str] = dataclasses.field(default_factory=dict)
    queue: str = "default"
    priority: int = 0
    max_attempts: int = 0

    @property
    def command_line(self) -> str:
        return " ".join(self.commands)


def build_classpath(extra_entries: tp.Iterable[str] = DEFAULT_APP_CLASSPATH) -> str:
    """Build the classpath of the deployed coordinator."""
    entries = ["$CLASSPATH", "./*", *(c.strip() for c in extra_entries), "./log4j.properties"]
    return os.pathsep.join(entries)


def build_commands(
    cluster_name: str,
    *,
    cluster_uri: str,
    rm_address: str = "",
    filesystem_url: str = "",
) -> tuple[str, ...]:
    """Build ordered argument vector that starts the deployed coordinator."""
    commands = [
        "$JAVA_HOME/bin/java",
        JAVA_FORCE_IPV4,
        JAVA_HEADLESS,
        COORDINATOR_ENTRY_POINT,
        COORDINATOR_CLASSNAME,
        ARG_DEBUG,
        "create",
        shlex.quote(cluster_name),
        ARG_CLUSTER_URI,
        cluster_uri,
    ]
    if rm_address:
        commands.extend([ARG_RM_ADDR, rm_address])
    if filesystem_url:
        commands.extend([ARG_FILESYSTEM, filesystem_url])
    commands.extend([f"1>{LOG_DIR_EXPANSION_VAR}/out.txt", f"2>{LOG_DIR_EXPANSION_VAR}/err.txt"])
    return tuple(commands)


def build_launch_descriptor(
    spec: cluster_spec.ClusterSpecification,
    *,
    cluster_uri: str,
    provider: cprovider.ClusterProvider,
    rm_address: str = "",
    filesystem_url: str = "",
    queue: str = "default",
    priority: int = 0,
) -> LaunchDescriptor:
    """Build launch descriptor of the deployed coordinator from the cluster specification."""
    local_resources = {
        common.GENERATED_CONF_DIR_NAME: spec.generated_conf_path,
        common.ORIG_CONF_DIR_NAME: spec.origin_conf_path,
    }
    if spec.image_path:
        local_resources["image"] = spec.image_path

    environment = provider.build_env(spec)
    LOGGER.debug(f"Environment map:\n{helpers.stringify_map(environment)}")

    commands = build_commands(
        spec.name, cluster_uri=cluster_uri, rm_address=rm_address, filesystem_url=filesystem_url
    )
    LOGGER.info(f"Completed setting up coordinator command {' '.join(commands)}")

    return LaunchDescriptor(
        name=spec.name,
        app_type=common.APP_TYPE,
        resource=provider.am_resource_requirements(spec),
        environment=environment,
        classpath=build_classpath(),
        commands=commands,
        local_resources=local_resources,
        queue=queue,
        priority=priority,
        # A test cluster gets a single attempt
        max_attempts=1 if spec.get_option_bool(common.OPTION_TEST) else 0,
    )
