"""
Dotted-path access into nested dict data.

    get_by_path({"client": {"name": "Jan"}}, "client.name")  ->  "Jan"
    set_by_path(data, "case.case_number", "WSC-II-S.6151.1.2024")
"""
from collections.abc import Mapping, MutableMapping
from typing import Any


def get_by_path(root: Any, path: str) -> Any:
    """Return the value at `path`, or None if any segment is missing."""
    current = root
    for key in path.split('.'):
        if not isinstance(current, Mapping) or key not in current:
            return None
        current = current[key]
    return current


def set_by_path(root: MutableMapping, path: str, value: Any) -> None:
    """
    Assign `value` at `path`, creating intermediate dicts as needed.

    A non-dict value sitting on an intermediate segment is replaced by an
    empty dict.
    """
    keys = path.split('.')
    current = root
    for key in keys[:-1]:
        if not isinstance(current.get(key), MutableMapping):
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value
