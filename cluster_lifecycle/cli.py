#!/usr/bin/env python3
"""Manage lifecycle of clusters deployed on a shared resource broker.

For settings it uses environment variables, see `cluster_lifecycle.utils.configuration`.
"""

import argparse
import functools
import logging
import sys
import typing as tp

from cluster_lifecycle.cluster_management import broker as cbroker
from cluster_lifecycle.cluster_management import common
from cluster_lifecycle.cluster_management import coordinator as ccoordinator
from cluster_lifecycle.cluster_management import coordinator_rpc
from cluster_lifecycle.cluster_management import errors
from cluster_lifecycle.cluster_management import spec_store
from cluster_lifecycle.utils import configuration
from cluster_lifecycle.utils import helpers

LOGGER = logging.getLogger(__name__)

ACTION_CREATE = "create"
ACTION_DESTROY = "destroy"
ACTION_EXISTS = "exists"
ACTION_FLEX = "flex"
ACTION_FREEZE = "freeze"
ACTION_GETCONF = "getconf"
ACTION_HELP = "help"
ACTION_LIST = "list"
ACTION_STATUS = "status"
ACTION_THAW = "thaw"

ACTIONS = (
    ACTION_CREATE,
    ACTION_DESTROY,
    ACTION_EXISTS,
    ACTION_FLEX,
    ACTION_FREEZE,
    ACTION_GETCONF,
    ACTION_HELP,
    ACTION_LIST,
    ACTION_STATUS,
    ACTION_THAW,
)


def _role_count_arg(arg: str) -> tuple[str, int]:
    role, count = helpers.check_key_value_arg(arg)
    try:
        return role, int(count)
    except ValueError as exc:
        msg = f"invalid count of role '{role}': '{count}'"
        raise argparse.ArgumentTypeError(msg) from exc


def _role_opt_arg(arg: str) -> tuple[str, str, str]:
    role, sep, key_value = arg.partition(":")
    if not (sep and role):
        msg = f"'{arg}' is not in the `role:key=value` form"
        raise argparse.ArgumentTypeError(msg)
    key, value = helpers.check_key_value_arg(key_value)
    return role, key, value


def _add_wait_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--wait",
        type=float,
        default=0,
        help="Seconds to wait for the operation to complete (default: 0, don't wait).",
    )


def get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=common.APP_NAME, description=(__doc__ or "").split("\n", maxsplit=1)[0]
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="action", metavar="ACTION")

    create = subparsers.add_parser(ACTION_CREATE, help="Create and start a cluster.")
    create.add_argument("cluster_name")
    create.add_argument(
        "--confdir",
        type=helpers.check_dir_arg,
        help="Path to a directory with the cluster configuration.",
    )
    create.add_argument("--image", default="", help="Path to the application image.")
    create.add_argument("--apphome", default="", help="Path to pre-installed application.")
    create.add_argument("--zkhosts", default="", help="Comma separated list of ZooKeeper hosts.")
    create.add_argument("--zkport", type=int, default=ccoordinator.DEFAULT_ZK_PORT)
    create.add_argument("--zkpath", default="", help="ZooKeeper path of the cluster.")
    create.add_argument(
        "--role",
        dest="roles",
        action="append",
        type=_role_count_arg,
        default=[],
        help="Number of instances of a role, in the `role=count` form; can be repeated.",
    )
    create.add_argument(
        "--roleopt",
        dest="role_opts",
        action="append",
        type=_role_opt_arg,
        default=[],
        help="Option of a role, in the `role:key=value` form; can be repeated.",
    )
    create.add_argument(
        "--option",
        dest="options",
        action="append",
        type=helpers.check_key_value_arg,
        default=[],
        help="Cluster option, in the `key=value` form; can be repeated.",
    )
    create.add_argument("--masterheap", type=int, default=common.DEF_HEAP_SIZE)
    create.add_argument("--workerheap", type=int, default=common.DEF_HEAP_SIZE)
    create.add_argument("--masterinfoport", type=int, default=-1)
    create.add_argument("--workerinfoport", type=int, default=-1)
    _add_wait_arg(create)

    destroy = subparsers.add_parser(ACTION_DESTROY, help="Destroy a stopped cluster.")
    destroy.add_argument("cluster_name")

    exists = subparsers.add_parser(ACTION_EXISTS, help="Check that a cluster is running.")
    exists.add_argument("cluster_name")

    flex = subparsers.add_parser(ACTION_FLEX, help="Change number of instances of roles.")
    flex.add_argument("cluster_name")
    flex.add_argument(
        "--role",
        dest="roles",
        action="append",
        type=_role_count_arg,
        default=[],
        help="Desired number of instances of a role, in the `role=count` form.",
    )
    flex.add_argument(
        "--persist",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Save the new size to the cluster specification (default: true).",
    )

    freeze = subparsers.add_parser(ACTION_FREEZE, help="Stop a cluster, keep its specification.")
    freeze.add_argument("cluster_name")
    _add_wait_arg(freeze)

    getconf = subparsers.add_parser(ACTION_GETCONF, help="Get client configuration.")
    getconf.add_argument("cluster_name")
    getconf.add_argument(
        "--format",
        dest="conf_format",
        default=ccoordinator.FORMAT_XML,
        help=f"Output format: {ccoordinator.FORMAT_XML} or {ccoordinator.FORMAT_PROPERTIES}.",
    )
    getconf.add_argument("--out", default="", help="Output file (default: stdout).")

    subparsers.add_parser(ACTION_HELP, help="Print help and exit.")

    list_parser = subparsers.add_parser(ACTION_LIST, help="List clusters.")
    list_parser.add_argument("cluster_name", nargs="?", default="")
    list_parser.add_argument("--user", default=None, help="List clusters of the user only.")

    status = subparsers.add_parser(ACTION_STATUS, help="Get status of a running cluster.")
    status.add_argument("cluster_name")
    status.add_argument("--out", default="", help="Output file (default: stdout).")

    thaw = subparsers.add_parser(ACTION_THAW, help="Start a frozen cluster.")
    thaw.add_argument("cluster_name")
    _add_wait_arg(thaw)

    return parser


def get_coordinator(wait_time: float = 0) -> ccoordinator.LifecycleCoordinator:
    """Get lifecycle coordinator configured from environment."""
    config = ccoordinator.CoordinatorConfig(
        user=configuration.USER,
        accept_timeout=configuration.ACCEPT_TIMEOUT,
        poll_interval=configuration.POLL_INTERVAL,
        wait_time=wait_time,
        rm_address=configuration.RM_SCHEDULER_ADDRESS,
        filesystem_url=configuration.FILESYSTEM_URL,
        am_queue=configuration.AM_QUEUE,
        am_priority=configuration.AM_PRIORITY,
    )
    return ccoordinator.LifecycleCoordinator(
        store=spec_store.SpecificationStore(spec_store.FileStore(configuration.STORE_DIR)),
        broker=cbroker.RestBroker(configuration.RESOURCE_MANAGER_URL),
        config=config,
        connector=functools.partial(coordinator_rpc.connect, timeout=configuration.RPC_TIMEOUT),
    )


def run_action(
    args: argparse.Namespace,
    coordinator: ccoordinator.LifecycleCoordinator,
    out: tp.TextIO | None = None,
) -> errors.ExitCodes:
    """Run the lifecycle action selected on command line."""
    out = out or sys.stdout
    action = args.action
    name = getattr(args, "cluster_name", "")

    if action == ACTION_CREATE:
        role_options: dict[str, dict[str, str]] = {}
        for role, key, value in args.role_opts:
            role_options.setdefault(role, {})[key] = value
        request = ccoordinator.CreateRequest(
            roles=dict(args.roles),
            role_options=role_options,
            options=dict(args.options),
            conf_dir=args.confdir,
            image=args.image,
            app_home=args.apphome,
            zk_hosts=args.zkhosts,
            zk_port=args.zkport,
            zk_path=args.zkpath,
            master_heap=args.masterheap,
            worker_heap=args.workerheap,
            master_info_port=args.masterinfoport,
            worker_info_port=args.workerinfoport,
        )
        return coordinator.create(name, request)
    if action == ACTION_DESTROY:
        return coordinator.destroy(name)
    if action == ACTION_EXISTS:
        return coordinator.exists(name)
    if action == ACTION_FLEX:
        outcome = coordinator.flex(name, dict(args.roles), persist=args.persist)
        LOGGER.info(f"Flex of cluster '{name}': {outcome.value}")
        return errors.ExitCodes.SUCCESS
    if action == ACTION_FREEZE:
        return coordinator.freeze(name, wait_time=args.wait)
    if action == ACTION_GETCONF:
        content = coordinator.getconf(name, fmt=args.conf_format, out_file=args.out or None)
        if not args.out:
            out.write(content)
        return errors.ExitCodes.SUCCESS
    if action == ACTION_LIST:
        for report in coordinator.list_clusters(args.cluster_name or None, user=args.user):
            out.write(f"{report.to_str()}\n")
        return errors.ExitCodes.SUCCESS
    if action == ACTION_STATUS:
        status = coordinator.status(name)
        if args.out:
            helpers.write_json(out_file=args.out, content=status.to_dict())
        else:
            out.write(f"{status.to_json()}\n")
        return errors.ExitCodes.SUCCESS
    if action == ACTION_THAW:
        return coordinator.thaw(name)

    msg = f"Unimplemented action: {action}"
    raise errors.UnimplementedError(msg)


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    parser = get_parser()

    action = next((a for a in argv if not a.startswith("-")), "")
    if action and action not in ACTIONS:
        logging.basicConfig(format="%(levelname)s:%(message)s", level=logging.INFO)
        LOGGER.error(f"Unimplemented action: {action}")
        return errors.ExitCodes.UNIMPLEMENTED

    args = parser.parse_args(argv)
    logging.basicConfig(
        format="%(levelname)s:%(message)s", level=logging.DEBUG if args.debug else logging.INFO
    )

    if not args.action or args.action == ACTION_HELP:
        parser.print_help()
        return errors.ExitCodes.SUCCESS

    try:
        coordinator = get_coordinator(wait_time=getattr(args, "wait", 0))
        return run_action(args=args, coordinator=coordinator)
    except errors.ClusterLifecycleError as exc:
        LOGGER.error(f"{exc.__class__.__name__}: {exc}")
        return exc.exit_code
    except OSError as exc:
        # Output files given on the command line
        LOGGER.error(f"{getattr(args, 'cluster_name', '')}: {exc.__class__.__name__}: {exc}")
        return errors.ExitCodes.BAD_CLUSTER_STATE


if __name__ == "__main__":
    sys.exit(main())
