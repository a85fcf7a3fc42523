"""
Common utilities shared across the reconcilers in the library
"""

# Standard
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Third Party
from dateutil import parser as date_parser

# First Party
import alog

log = alog.use_channel("OPUTL")

# Delimiter used for 'foo.bar' nested key notation
NESTED_DICT_DELIM = "."

# Sentinel for missing dict values
__MISSING__ = "__MISSING__"

## Dicts #######################################################################


def nested_set(dct: dict, key: str, val: Any):
    """Helper to set values in a dict using 'foo.bar' key notation

    Args:
        dct:  dict
            The dict into which the key will be set
        key:  str
            Key that may contain '.' notation indicating dict nesting
        val:  Any
            The value to place at the nested key
    """
    parts = key.split(NESTED_DICT_DELIM)
    for i, part in enumerate(parts[:-1]):
        dct = dct.setdefault(part, {})
        if not isinstance(dct, dict):
            raise TypeError(
                f"Intermediate key {NESTED_DICT_DELIM.join(parts[: i + 1])} "
                "is not a dict"
            )
    dct[parts[-1]] = val


def nested_get(dct: dict, key: str, dflt=None) -> Any:
    """Helper to get values from a dict using 'foo.bar' key notation

    Args:
        dct:  dict
            The dict to read from
        key:  str
            Key that may contain '.' notation indicating dict nesting
        dflt:  Any
            Value returned when any part of the key is missing or None

    Returns:
        val:  Any
            Whatever is found at the given key or dflt if the key is not found.
            This includes missing intermediate dicts.
    """
    parts = key.split(NESTED_DICT_DELIM)
    for i, part in enumerate(parts[:-1]):
        dct = dct.get(part, __MISSING__)
        if dct is __MISSING__ or dct is None:
            return dflt
        if not isinstance(dct, dict):
            raise TypeError(
                f"Intermediate key {NESTED_DICT_DELIM.join(parts[: i + 1])} "
                "is not a dict"
            )
    val = dct.get(parts[-1], dflt)
    return dflt if val is None else val


## Labels ######################################################################


def render_label_selector(labels: Optional[Dict[str, str]]) -> str:
    """Render a dict of labels as an equality-based label selector string

    Args:
        labels:  Optional[Dict[str, str]]
            The labels that must all match

    Returns:
        selector:  str
            The selector in "k1=v1,k2=v2" form, sorted by key
    """
    return ",".join(f"{key}={val}" for key, val in sorted((labels or {}).items()))


## Time ########################################################################


def now() -> datetime:
    """Current time in UTC, truncated to whole seconds the way the API server
    stores timestamps
    """
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_timestamp(timestamp: datetime) -> str:
    """Format a datetime as an RFC3339 Kubernetes timestamp"""
    return timestamp.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(timestamp: Optional[str]) -> Optional[datetime]:
    """Parse an RFC3339 Kubernetes timestamp. Missing or unparsable values
    return None.
    """
    if not timestamp:
        return None
    try:
        parsed = date_parser.isoparse(timestamp)
    except ValueError:
        log.debug("Could not parse timestamp [%s]", timestamp)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
