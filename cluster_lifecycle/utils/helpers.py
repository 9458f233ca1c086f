import argparse
import json
import logging
import pathlib as pl
import re
import typing as tp

import cluster_lifecycle.utils.types as ttypes

LOGGER = logging.getLogger(__name__)

_CLUSTER_NAME_RE = re.compile("^[a-z][a-z0-9_-]*$")


def is_cluster_name_valid(name: str | None) -> bool:
    """Check that the cluster name is usable as a path component and an application name.

    >>> is_cluster_name_valid("hbase-01")
    True
    >>> is_cluster_name_valid("01hbase")
    False
    """
    return bool(name) and bool(_CLUSTER_NAME_RE.match(name or ""))


def merge_maps(first: dict[str, tp.Any], second: tp.Mapping[str, tp.Any]) -> dict[str, tp.Any]:
    """Merge `second` into `first` in place, values in `second` win."""
    first.update(second)
    return first


def parse_int(
    name: str, value: str | int | None, *, default: int, min_value: int, max_value: int = -1
) -> int:
    """Parse integer value and check it is in range.

    A `max_value` of -1 means there is no upper limit.
    """
    if value is None or value == "":
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        msg = f"Invalid integer value of {name}: '{value}'"
        raise ValueError(msg) from exc
    if parsed < min_value:
        msg = f"Value of {name} below minimum {min_value}: {parsed}"
        raise ValueError(msg)
    if max_value >= 0 and parsed > max_value:
        msg = f"Value of {name} above maximum {max_value}: {parsed}"
        raise ValueError(msg)
    return parsed


def stringify_map(content: tp.Mapping[str, tp.Any]) -> str:
    """Return one `key="value"` line per map entry."""
    return "\n".join(f'{k}="{v}"' for k, v in sorted(content.items()))


def write_json(*, out_file: ttypes.FileType, content: dict) -> ttypes.FileType:
    """Write dictionary content to JSON file."""
    with open(pl.Path(out_file).expanduser(), "w", encoding="utf-8") as out_fp:
        out_fp.write(json.dumps(content, indent=4))
    return out_file


def check_dir_arg(dir_path: str) -> pl.Path | None:
    """Check that the dir passed as argparse parameter is a valid existing dir."""
    if not dir_path:
        return None
    abs_path = pl.Path(dir_path).expanduser().resolve()
    if not (abs_path.exists() and abs_path.is_dir()):
        msg = f"check_dir_arg: directory '{dir_path}' doesn't exist"
        raise argparse.ArgumentTypeError(msg)
    return abs_path


def check_key_value_arg(arg: str) -> tuple[str, str]:
    """Check that the argparse parameter has the `key=value` form."""
    key, sep, value = arg.partition("=")
    if not (sep and key):
        msg = f"check_key_value_arg: '{arg}' is not in the `key=value` form"
        raise argparse.ArgumentTypeError(msg)
    return key.strip(), value.strip()
