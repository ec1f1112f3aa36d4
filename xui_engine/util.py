"""Utility functions and helpers for the engine.

This module provides common utilities used across the engine including:
- Best-effort parsing of JSON blobs stored as text
- Tag and stats counter name helpers
- Storage error classification
- Exception classes
"""

import json
import logging
import sqlite3
from typing import TypeAlias, Union, Dict, Any, List, Optional, Literal

JsonType: TypeAlias = Union[Dict[Any, Any], List[Any]]

TAG_PREFIX = "inbound-"
STAT_SEPARATOR = ">>>"


def default_tag(inbound_id: str) -> str:
    """Return the tag an inbound gets when it does not carry one.

    Examples:
        >>> default_tag("2a80a671")
        'inbound-2a80a671'
    """
    return f"{TAG_PREFIX}{inbound_id}"


def stat_name(direction: str, tag: str, kind: str, updown: str) -> str:
    """Build an Xray stats counter name.

    Args:
        direction: "inbound", "outbound" or "user".
        tag: The routing tag the counter belongs to.
        kind: The counter kind, usually "traffic".
        updown: "uplink" or "downlink".

    Returns:
        The counter name, e.g. ``inbound>>>my-tag>>>traffic>>>uplink``.
    """
    return STAT_SEPARATOR.join((direction, tag, kind, updown))


def parse_json_field(value: Optional[str]) -> JsonType | None:
    """Parse a JSON blob stored as text.

    A missing, empty or malformed value yields None instead of raising, so one
    broken column never takes the rest of a config build down with it.
    """
    if value is None or value == "":
        return None
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        logging.log(logging.DEBUG, "Ignoring unparsable JSON field: %r", value[:80])
        return None
    if not isinstance(parsed, (dict, list)):
        logging.log(logging.DEBUG, "Ignoring non-object JSON field: %r", value[:80])
        return None
    return parsed


def check_db_error(error: sqlite3.Error) -> Literal["DB_LOCKED", "ERROR"]:
    """Classify a storage error.

    Returns:
        "DB_LOCKED" when the operation can be retried, "ERROR" otherwise.

    Examples:
        >>> check_db_error(sqlite3.OperationalError("database is locked"))
        'DB_LOCKED'
    """
    msg = str(error).lower()
    if "database" in msg and "locked" in msg:
        logging.log(logging.WARNING, "Database is locked, retrying...")
        return "DB_LOCKED"
    return "ERROR"


def tail(lines: List[str], count: int) -> List[str]:
    """Return at most the last ``count`` items of ``lines``."""
    if len(lines) > count:
        return lines[len(lines) - count:]
    return lines


class EngineError(Exception):
    """Base class for errors raised by the engine."""


class DBLockedError(EngineError):
    """Exception raised when the SQLite database stays locked.

    Raised once a write has been retried the maximum number of times and the
    database is still locked by another connection.
    """

    def __init__(self, message: str):
        super().__init__(message)


class ConfigBuildError(EngineError):
    """The Xray configuration could not be serialized or written."""


class SupervisorError(EngineError):
    """The xray process could not be started or queried."""


class UpdateError(EngineError):
    """Downloading or installing a new xray binary failed."""
