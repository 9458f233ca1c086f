"""Default configuration of the deployed service.

The provider knows which roles the service has and what their default options are. Role ids
are the indexes of role slots in the placement history.
"""

import dataclasses
import typing as tp

from cluster_lifecycle.cluster_management import cluster_spec
from cluster_lifecycle.cluster_management import common


@dataclasses.dataclass(frozen=True, order=True)
class ProviderRole:
    id: int
    name: str


class ClusterProvider:
    """Provider of the default cluster layout: one master and a pool of workers."""

    NAME: tp.ClassVar[str] = "hbase"
    ROLES: tp.ClassVar[tuple[ProviderRole, ...]] = (
        ProviderRole(id=0, name=common.ROLE_MASTER),
        ProviderRole(id=1, name=common.ROLE_WORKER),
    )

    @property
    def name(self) -> str:
        return self.NAME

    def get_roles(self) -> list[ProviderRole]:
        return list(self.ROLES)

    def get_role(self, name: str) -> ProviderRole:
        for role in self.ROLES:
            if role.name == name:
                return role
        msg = f"Unknown role '{name}' of provider '{self.NAME}'"
        raise KeyError(msg)

    def get_default_cluster_options(self) -> dict[str, str]:
        return {
            "site.hbase.cluster.distributed": "true",
            common.OPTION_TEST: "false",
        }

    def create_default_cluster_role(self, role_name: str) -> dict[str, str]:
        """Return default option map of the role."""
        return {
            common.ROLE_NAME: role_name,
            common.ROLE_INSTANCES: "0",
            common.YARN_MEMORY: str(common.DEF_HEAP_SIZE),
            common.JVM_HEAP: str(common.DEF_HEAP_SIZE),
            common.YARN_CORES: str(common.DEF_YARN_CORES),
        }

    def build_env(self, spec: cluster_spec.ClusterSpecification) -> dict[str, str]:
        """Build environment of the deployed coordinator from `env.*` options of the master."""
        master_opts = spec.roles.get(common.ROLE_MASTER, {})
        return {
            k[len(common.ENV_PREFIX) :]: v
            for k, v in master_opts.items()
            if k.startswith(common.ENV_PREFIX) and len(k) > len(common.ENV_PREFIX)
        }

    def am_resource_requirements(self, spec: cluster_spec.ClusterSpecification) -> dict[str, int]:
        """Return memory (MB) and cores for the deployed coordinator."""
        memory = int(spec.options.get(common.OPTION_AM_MEMORY) or common.DEFAULT_AM_MEMORY)
        cores = int(spec.options.get(common.OPTION_AM_CORES) or common.DEFAULT_AM_CORES)
        return {"memory": memory, "vCores": cores}
