"""Errors raised by the lifecycle operations and the exit codes they map to."""

import enum


class ExitCodes(enum.IntEnum):
    """Exit codes of the lifecycle operations, one per outcome automation can branch on."""

    SUCCESS = 0
    BAD_ARGUMENTS = 40
    UNIMPLEMENTED = 44
    BAD_CLUSTER_STATE = 70
    UNKNOWN_CLUSTER = 71
    CONNECTIVITY_PROBLEM = 72
    TIMED_OUT = 73
    SERVICE_FINISHED_WITH_ERROR = 74
    SERVICE_KILLED = 75
    SERVICE_FAILED = 76


class ClusterLifecycleError(Exception):
    """Base class for errors that end a lifecycle operation."""

    exit_code: ExitCodes = ExitCodes.BAD_CLUSTER_STATE


class BadArgumentsError(ClusterLifecycleError):
    """Invalid caller input. Never retried."""

    exit_code = ExitCodes.BAD_ARGUMENTS


class BadClusterStateError(ClusterLifecycleError):
    """Name collision, detected create/destroy race or missing mandatory input."""

    exit_code = ExitCodes.BAD_CLUSTER_STATE


class SpecValidationError(BadClusterStateError):
    """Persisted cluster specification is malformed or doesn't match the expected schema."""


class UnknownClusterError(ClusterLifecycleError):
    exit_code = ExitCodes.UNKNOWN_CLUSTER


class ConnectivityError(ClusterLifecycleError):
    """Address of the deployed coordinator is unusable or the coordinator doesn't answer."""

    exit_code = ExitCodes.CONNECTIVITY_PROBLEM


class UnimplementedError(ClusterLifecycleError):
    exit_code = ExitCodes.UNIMPLEMENTED


class WaitTimeoutError(ClusterLifecycleError):
    """Waiting for a role instance to go live took longer than allowed."""

    exit_code = ExitCodes.TIMED_OUT
