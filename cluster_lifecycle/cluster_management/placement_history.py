"""Per-node, per-role placement history.

The history remembers on which hosts instances of each role ran and when a host was last used
by a role. Whatever makes a placement decision sorts candidate hosts with `sort_by_recency`:
most-recently-used first to get affinity with the data left behind, or reversed to spread
instances over idle hosts. The ordering itself carries no policy direction.

Mutations of all role slots of a single host are serialized by the lock of its `NodeInstance`.
Different hosts never share a lock. `PlacementHistory.update` runs a change of a single entry
under that lock, so a reaper sweep (`PlacementHistory.purge_unused`) sees either the entry before
the change or after it. A host forgotten by the reaper is never written to again: the history
methods re-check under the host lock that the node is still the registered one.
"""

import contextlib
import dataclasses
import functools
import logging
import threading
import time
import typing as tp

LOGGER = logging.getLogger(__name__)

T = tp.TypeVar("T")


def now_millis() -> int:
    return int(time.time() * 1000)


@dataclasses.dataclass
class NodeEntry:
    """Usage of a single host by a single role.

    Counters track instances of the role on the host through their lifecycle, `last_used` is a
    timestamp in milliseconds of the last time an instance was released there.
    """

    requested: int = 0
    starting: int = 0
    start_failed: int = 0
    live: int = 0
    releasing: int = 0
    last_used: int = 0

    @property
    def active(self) -> int:
        """Number of instances running and not being released."""
        return max(self.live - self.releasing, 0)

    @property
    def available(self) -> bool:
        """Check that no instance is active, requested or starting."""
        return self.active == 0 and self.requested == 0 and self.starting == 0

    def not_used_since(self, cutoff: int) -> bool:
        """Check the entry is idle and wasn't used since `cutoff`."""
        return self.available and self.last_used < cutoff

    def request(self) -> None:
        self.requested += 1

    def start(self) -> None:
        """An instance was allocated on the host and is being started."""
        self.requested = max(self.requested - 1, 0)
        self.starting += 1

    def start_completed(self) -> None:
        self.starting = max(self.starting - 1, 0)
        self.live += 1

    def start_failed_(self) -> None:
        self.starting = max(self.starting - 1, 0)
        self.start_failed += 1

    def release(self) -> None:
        """An active instance is being released."""
        if self.releasing >= self.live:
            msg = f"Nothing to release: {self}"
            raise ValueError(msg)
        self.releasing += 1

    def release_completed(self, timestamp: int | None = None) -> None:
        self.releasing = max(self.releasing - 1, 0)
        self.live = max(self.live - 1, 0)
        self.last_used = now_millis() if timestamp is None else timestamp

    def touch(self, timestamp: int | None = None) -> None:
        self.last_used = now_millis() if timestamp is None else timestamp


class NodeInstance:
    """Information about a single host of the cluster, one slot per known role.

    Equality and hash are based purely on the hostname, two records for the same host are
    interchangeable.
    """

    def __init__(self, hostname: str, roles: int) -> None:
        if roles < 0:
            msg = f"Invalid number of roles: {roles}"
            raise ValueError(msg)
        self.hostname = hostname
        self._entries: list[NodeEntry | None] = [None] * roles
        self._lock = threading.RLock()
        self._holds = 0

    @property
    def lock(self) -> threading.RLock:
        """Lock serializing changes of all role slots of the host."""
        return self._lock

    @contextlib.contextmanager
    def held(self) -> tp.Iterator["NodeInstance"]:
        """Lock the node and keep the reaper from forgetting it until the block ends."""
        with self._lock:
            self._holds += 1
            try:
                yield self
            finally:
                self._holds -= 1

    @property
    def role_count(self) -> int:
        return len(self._entries)

    def _check_role(self, role: int) -> None:
        if not 0 <= role < len(self._entries):
            msg = f"Role {role} out of range 0..{len(self._entries) - 1} on '{self.hostname}'"
            raise IndexError(msg)

    def get(self, role: int) -> NodeEntry | None:
        """Get the entry for a role, if present."""
        self._check_role(role)
        with self._lock:
            return self._entries[role]

    def get_or_create(self, role: int) -> NodeEntry:
        """Get the entry for a role, create an empty one if not present."""
        self._check_role(role)
        with self._lock:
            entry = self._entries[role]
            if entry is None:
                entry = NodeEntry()
                self._entries[role] = entry
            return entry

    def remove(self, role: int) -> NodeEntry | None:
        """Remove the entry for a role and return the entry that was there."""
        self._check_role(role)
        with self._lock:
            entry = self._entries[role]
            self._entries[role] = None
            return entry

    def set(self, role: int, entry: NodeEntry | None) -> None:
        self._check_role(role)
        with self._lock:
            self._entries[role] = entry

    def clone_node_entries(self) -> list[NodeEntry | None]:
        """Get a copy of the role slots.

        Changes to the list are not reflected, changes to the entries themselves are.
        """
        with self._lock:
            return list(self._entries)

    def purge_unused_entries(self, cutoff: int) -> bool:
        """Remove entries not used since `cutoff`.

        Return True if any entry is left.
        """
        active = False
        with self._lock:
            for i, entry in enumerate(self._entries):
                if entry is None:
                    continue
                if entry.not_used_since(cutoff):
                    self._entries[i] = None
                else:
                    active = True
        return active

    def is_empty(self) -> bool:
        with self._lock:
            return all(e is None for e in self._entries)

    def is_forgettable(self) -> bool:
        """Check the node has no entry and nobody holds it."""
        with self._lock:
            return self._holds == 0 and self.is_empty()

    def last_used(self, role: int) -> int:
        """Return when the role last used the host, 0 if it never did."""
        entry = self.get(role)
        return entry.last_used if entry is not None else 0

    def to_full_string(self) -> str:
        """Return multi-line description of the node including all its role slots."""
        lines = [self.hostname]
        for i, entry in enumerate(self.clone_node_entries()):
            lines.append(f"  [{i:02d}]  {entry if entry is not None else ''}".rstrip())
        return "\n".join(lines)

    def __eq__(self, other: object) -> bool:
        if self is other:
            return True
        if not isinstance(other, NodeInstance):
            return NotImplemented
        return self.hostname == other.hostname

    def __hash__(self) -> int:
        return hash(self.hostname)

    def __str__(self) -> str:
        return self.hostname

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.hostname!r}, roles={self.role_count})"


def newer_than(role: int) -> tp.Callable[[NodeInstance, NodeInstance], int]:
    """Return comparator ordering nodes by last use of the `role`, most recent first.

    Only `last_used` is compared, not whether the node is currently in use.
    """

    def _compare(first: NodeInstance, second: NodeInstance) -> int:
        age1 = first.last_used(role)
        age2 = second.last_used(role)
        if age1 > age2:
            return -1
        if age1 < age2:
            return 1
        return 0

    return _compare


def sort_by_recency(
    instances: tp.Iterable[NodeInstance], role: int, *, reverse: bool = False
) -> list[NodeInstance]:
    """Sort nodes by last use of the `role`, most recent first unless `reverse` is set.

    The sort is stable, nodes used at exactly the same time keep their relative order.
    """
    return sorted(instances, key=functools.cmp_to_key(newer_than(role)), reverse=reverse)


class PlacementHistory:
    """Placement history of all hosts known to the observer."""

    def __init__(self, roles: int) -> None:
        if roles < 0:
            msg = f"Invalid number of roles: {roles}"
            raise ValueError(msg)
        self.roles = roles
        self._nodes: dict[str, NodeInstance] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, hostname: object) -> bool:
        return hostname in self._nodes

    def hostnames(self) -> list[str]:
        return list(self._nodes)

    def node_instances(self) -> list[NodeInstance]:
        return list(self._nodes.values())

    def get_node(self, hostname: str) -> NodeInstance | None:
        return self._nodes.get(hostname)

    def get_or_create_node(self, hostname: str) -> NodeInstance:
        node = self._nodes.get(hostname)
        if node is None:
            # `setdefault` is atomic, a concurrent creator gets the same instance
            node = self._nodes.setdefault(hostname, NodeInstance(hostname, self.roles))
        return node

    def _check_role(self, role: int) -> None:
        if not 0 <= role < self.roles:
            msg = f"Role {role} out of range 0..{self.roles - 1}"
            raise IndexError(msg)

    @contextlib.contextmanager
    def locked_node(self, hostname: str) -> tp.Iterator[NodeInstance]:
        """Hold the lock of the registered node of the host, create the node if needed.

        A node forgotten by the reaper between the lookup and the locking is replaced with a new
        one, changes made inside the block always stay in the history.
        """
        while True:
            node = self.get_or_create_node(hostname)
            with node.held():
                if self._nodes.get(hostname) is node:
                    yield node
                    return
            LOGGER.debug(f"Host '{hostname}' was forgotten while being locked, retrying")

    def get(self, hostname: str, role: int) -> NodeEntry | None:
        self._check_role(role)
        node = self._nodes.get(hostname)
        if node is None:
            return None
        return node.get(role)

    def get_or_create(self, hostname: str, role: int) -> NodeEntry:
        self._check_role(role)
        with self.locked_node(hostname) as node:
            return node.get_or_create(role)

    def update(self, hostname: str, role: int, func: tp.Callable[[NodeEntry], T]) -> T:
        """Change the entry of the role under the host lock, create the entry if needed.

        Return whatever `func` returns. The reaper never sees the entry halfway through the change.
        """
        self._check_role(role)
        with self.locked_node(hostname) as node:
            return func(node.get_or_create(role))

    def remove(self, hostname: str, role: int) -> NodeEntry | None:
        self._check_role(role)
        node = self._nodes.get(hostname)
        if node is None:
            return None
        return node.remove(role)

    def set(self, hostname: str, role: int, entry: NodeEntry | None) -> None:
        """Replace the entry, e.g. when merging in state reported from outside."""
        self._check_role(role)
        with self.locked_node(hostname) as node:
            node.set(role, entry)

    def purge_unused_entries(self, hostname: str, cutoff: int) -> bool:
        """Purge stale entries of a single host, return True if the host still has any entry."""
        node = self._nodes.get(hostname)
        if node is None:
            return False
        return node.purge_unused_entries(cutoff)

    def purge_unused(self, cutoff: int) -> list[str]:
        """Reaper sweep over all hosts, forget hosts with no entry left.

        Return hostnames that were forgotten.
        """
        forgotten = []
        for hostname, node in list(self._nodes.items()):
            if node.purge_unused_entries(cutoff):
                continue
            with node.lock:
                # An entry may have been created since the purge
                if not node.is_forgettable() or self._nodes.get(hostname) is not node:
                    continue
                del self._nodes[hostname]
            forgotten.append(hostname)

        if forgotten:
            LOGGER.debug(f"Forgot {len(forgotten)} idle hosts: {forgotten}")
        return forgotten

    def recent_hosts(self, role: int, *, reverse: bool = False) -> list[NodeInstance]:
        """Return hosts that have an entry for the `role`, sorted by recency of use."""
        self._check_role(role)
        candidates = [n for n in self.node_instances() if n.get(role) is not None]
        return sort_by_recency(candidates, role, reverse=reverse)
