"""RPC with the deployed coordinator of a running cluster."""

import dataclasses
import json
import logging
import typing as tp

import requests

from cluster_lifecycle.cluster_management import broker as cbroker
from cluster_lifecycle.cluster_management import cluster_spec
from cluster_lifecycle.cluster_management import errors
from cluster_lifecycle.utils import http_client

LOGGER = logging.getLogger(__name__)

DEFAULT_RPC_TIMEOUT = 15.0


@dataclasses.dataclass(frozen=True)
class ClusterNode:
    """A single role instance as reported by the deployed coordinator."""

    uuid: str
    name: str = ""
    role: str = ""
    state: cluster_spec.ClusterState = cluster_spec.ClusterState.INCOMPLETE
    host: str = ""
    exit_code: int = 0
    diagnostics: str = ""

    @classmethod
    def from_json(cls, json_str: str | bytes) -> "ClusterNode":
        try:
            content = json.loads(json_str)
            return cls(
                uuid=str(content["uuid"]),
                name=content.get("name") or "",
                role=content.get("role") or "",
                state=cluster_spec.ClusterState(int(content.get("state") or 0)),
                host=content.get("host") or "",
                exit_code=int(content.get("exitCode") or 0),
                diagnostics=content.get("diagnostics") or "",
            )
        except (ValueError, KeyError, TypeError) as exc:
            msg = f"Invalid node description: {exc}"
            raise errors.SpecValidationError(msg) from exc


class CoordinatorRpc(tp.Protocol):
    def stop_cluster(self) -> None:
        ...

    def flex_cluster(self, spec_json: str) -> bool:
        """Resize the cluster, return True if the cluster size changed."""

    def get_cluster_status(self) -> str:
        ...

    def list_nodes_by_role(self, role: str) -> list[str]:
        ...

    def get_node(self, uuid: str) -> str:
        ...


ConnectorType = tp.Callable[[cbroker.InstanceReport], CoordinatorRpc]


class HttpCoordinatorClient:
    """JSON over HTTP client of the deployed coordinator."""

    def __init__(self, host: str, port: int, timeout: float = DEFAULT_RPC_TIMEOUT) -> None:
        self.address = f"{host}:{port}"
        self.base_url = f"http://{self.address}/ws/v1/coordinator"
        self.timeout = timeout

    def _call(self, method: str, path: str, **kwargs: tp.Any) -> tp.Any:
        url = f"{self.base_url}{path}"
        try:
            response = http_client.get_session().request(
                method, url, timeout=self.timeout, **kwargs
            )
        except requests.exceptions.RequestException as exc:
            msg = f"Failed to reach the deployed coordinator at {self.address}: {exc}"
            raise errors.ConnectivityError(msg) from exc

        if response.status_code == 404:
            msg = f"Not found on the deployed coordinator: {path}"
            raise errors.UnknownClusterError(msg)
        if not response.ok:
            msg = (
                f"Call `{method} {path}` to the deployed coordinator failed.\n"
                f"  status: {response.status_code}\n"
                f"  error: {response.text}"
            )
            raise errors.ConnectivityError(msg)

        return response.json() if response.content else None

    def stop_cluster(self) -> None:
        self._call("POST", "/stop")

    def flex_cluster(self, spec_json: str) -> bool:
        out = self._call(
            "POST", "/flex", data=spec_json, headers={"Content-Type": "application/json"}
        )
        return bool(out and out.get("changed"))

    def get_cluster_status(self) -> str:
        return json.dumps(self._call("GET", "/status"))

    def list_nodes_by_role(self, role: str) -> list[str]:
        out = self._call("GET", f"/roles/{role}/nodes") or []
        return [str(n) for n in out]

    def get_node(self, uuid: str) -> str:
        return json.dumps(self._call("GET", f"/nodes/{uuid}"))


def check_address(report: cbroker.InstanceReport) -> None:
    """Fail with `ConnectivityError` if the instance doesn't advertise an RPC address."""
    if not report.host or report.rpc_port == 0:
        msg = (
            f"Instance {report.name} isn't providing a valid address for the coordinator RPC: "
            f"{report.host}:{report.rpc_port}"
        )
        raise errors.ConnectivityError(msg)


def connect(
    report: cbroker.InstanceReport, timeout: float = DEFAULT_RPC_TIMEOUT
) -> HttpCoordinatorClient:
    """Connect to the deployed coordinator of the application."""
    check_address(report)
    LOGGER.debug(f"Connecting to the deployed coordinator at {report.host}:{report.rpc_port}")
    return HttpCoordinatorClient(host=report.host, port=report.rpc_port, timeout=timeout)
