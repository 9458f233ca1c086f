"""Resource broker - the cluster-wide service that runs applications.

`ResourceBroker` is the narrow interface the lifecycle coordinator needs. `RestBroker` implements
it on top of the ResourceManager REST API (`/ws/v1/cluster/apps...`).
"""

import dataclasses
import enum
import logging
import typing as tp

import requests

from cluster_lifecycle.cluster_management import errors
from cluster_lifecycle.cluster_management import launch
from cluster_lifecycle.utils import http_client

LOGGER = logging.getLogger(__name__)


class AppState(enum.IntEnum):
    """Lifecycle state of a submitted application.

    States are totally ordered, "reached state X" means the ordinal is >= X.
    """

    NEW = 0
    NEW_SAVING = 1
    SUBMITTED = 2
    ACCEPTED = 3
    RUNNING = 4
    FINISHED = 5
    FAILED = 6
    KILLED = 7

    @property
    def is_live(self) -> bool:
        return self <= AppState.RUNNING

    @property
    def is_terminal(self) -> bool:
        return self >= AppState.FINISHED


class FinalStatus(enum.Enum):
    UNDEFINED = "UNDEFINED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    KILLED = "KILLED"


@dataclasses.dataclass(frozen=True)
class InstanceReport:
    """Broker's view of a submitted application."""

    app_id: str
    name: str
    user: str
    state: AppState
    final_status: FinalStatus = FinalStatus.UNDEFINED
    host: str = ""
    rpc_port: int = 0
    app_type: str = ""
    diagnostics: str = ""
    start_time: int = 0

    @property
    def is_live(self) -> bool:
        return self.state.is_live

    def to_str(self, separator: str = ", ") -> str:
        return separator.join(
            (
                f"application ID: {self.app_id}",
                f"name: {self.name}",
                f"user: {self.user}",
                f"type: {self.app_type}",
                f"state: {self.state.name}",
                f"final status: {self.final_status.value}",
                f"RPC address: {self.host}:{self.rpc_port}",
                f"started: {self.start_time}",
                f"diagnostics: {self.diagnostics}",
            )
        )

    @classmethod
    def from_rest(cls, app: dict[str, tp.Any]) -> "InstanceReport":
        """Build the report from the `app` object of the REST API."""
        host, port = "", 0
        rpc_address = app.get("amRPCAddress") or ""
        if rpc_address and ":" in rpc_address:
            host, port_str = rpc_address.rsplit(":", maxsplit=1)
            port = int(port_str) if port_str.isdigit() else 0
        if host in ("N/A", "null"):
            host = ""

        return cls(
            app_id=app["id"],
            name=app.get("name") or "",
            user=app.get("user") or "",
            state=AppState[app.get("state") or "NEW"],
            final_status=FinalStatus(app.get("finalStatus") or "UNDEFINED"),
            host=host,
            rpc_port=port,
            app_type=app.get("applicationType") or "",
            diagnostics=app.get("diagnostics") or "",
            start_time=int(app.get("startedTime") or 0),
        )


class ResourceBroker(tp.Protocol):
    def submit(self, descriptor: launch.LaunchDescriptor) -> str:
        """Submit the application and return its id."""

    def get_report(self, app_id: str) -> InstanceReport:
        ...

    def list_by_type(self, app_type: str) -> list[InstanceReport]:
        ...

    def kill(self, app_id: str, reason: str = "") -> None:
        ...


def _map_entries(content: tp.Mapping[str, tp.Any]) -> dict[str, list[dict[str, tp.Any]]]:
    return {"entry": [{"key": k, "value": v} for k, v in content.items()]}


class RestBroker:
    """Client of the ResourceManager REST API."""

    API_PATH = "/ws/v1/cluster"

    def __init__(self, base_url: str, timeout: float = 30) -> None:
        if not base_url:
            msg = "No ResourceManager URL was provided"
            raise errors.BadArgumentsError(msg)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self.base_url}{self.API_PATH}{path}"

    def _request(self, method: str, path: str, **kwargs: tp.Any) -> requests.Response:
        url = self._url(path)
        try:
            response = http_client.get_session().request(
                method, url, timeout=self.timeout, **kwargs
            )
        except requests.exceptions.RequestException as exc:
            msg = f"Failed to reach ResourceManager at {url}: {exc}"
            raise errors.ConnectivityError(msg) from exc

        if not response.ok:
            msg = (
                f"ResourceManager request `{method} {url}` failed.\n"
                f"  status: {response.status_code}\n"
                f"  reason: {response.reason}\n"
                f"  error: {response.text}"
            )
            if response.status_code == 404:
                raise errors.UnknownClusterError(msg)
            raise errors.ConnectivityError(msg)

        return response

    def new_application(self) -> str:
        response = self._request("POST", "/apps/new-application")
        return str(response.json()["application-id"])

    def submit(self, descriptor: launch.LaunchDescriptor) -> str:
        app_id = self.new_application()
        environment = dict(descriptor.environment)
        if descriptor.classpath:
            environment["CLASSPATH"] = descriptor.classpath
        body: dict[str, tp.Any] = {
            "application-id": app_id,
            "application-name": descriptor.name,
            "application-type": descriptor.app_type,
            "queue": descriptor.queue,
            "priority": descriptor.priority,
            "resource": dict(descriptor.resource),
            "unmanaged-AM": False,
            "keep-containers-across-application-attempts": False,
            "am-container-spec": {
                "local-resources": _map_entries(
                    {
                        name: {"resource": res, "type": "FILE", "visibility": "APPLICATION"}
                        for name, res in descriptor.local_resources.items()
                    }
                ),
                "environment": _map_entries(environment),
                "commands": {"command": descriptor.command_line},
            },
        }
        if descriptor.max_attempts > 0:
            body["max-app-attempts"] = descriptor.max_attempts
        LOGGER.info(f"Submitting application '{descriptor.name}' ({app_id}) to ResourceManager")
        self._request("POST", "/apps", json=body)
        return app_id

    def get_report(self, app_id: str) -> InstanceReport:
        response = self._request("GET", f"/apps/{app_id}")
        return InstanceReport.from_rest(response.json()["app"])

    def list_by_type(self, app_type: str) -> list[InstanceReport]:
        response = self._request("GET", "/apps", params={"applicationTypes": app_type})
        apps = (response.json().get("apps") or {}).get("app") or []
        return [InstanceReport.from_rest(a) for a in apps]

    def kill(self, app_id: str, reason: str = "") -> None:
        LOGGER.info(f"Killing application {app_id} - {reason}")
        body: dict[str, str] = {"state": AppState.KILLED.name}
        if reason:
            body["diagnostics"] = reason
        self._request("PUT", f"/apps/{app_id}/state", json=body)
