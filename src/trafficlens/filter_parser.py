"""Filter expression parsing.

the dashboard sends filters as a json object of bare dimension names,
e.g. {"goal": "Signup", "page": "/blog/**", "country": "!DE|FR"}. older
api clients use "key==value;key!=value". both end up as a mapping of
namespaced dimension keys ("visit:country", "event:page",
"event:props:author") to FilterClause values.

value grammar, applied left to right:
  !   negates the clause
  ~   contains instead of equals
  |   separates alternatives (escape a literal pipe as \\|)
  *   glob wildcard, only on page-like dimensions and goals
"""

import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from trafficlens.errors import QueryValidationError
from trafficlens.models.filters import (
    ContainsFilter,
    DoesNotContainFilter,
    DoesNotMatchFilter,
    FilterClause,
    IsFilter,
    IsNotFilter,
    MatchesFilter,
    MemberFilter,
    NotMemberFilter,
)
from trafficlens.models.query import EVENT_PREFIX, PROPS_PREFIX, VISIT_PREFIX

logger = logging.getLogger(__name__)

VISIT_DIMENSIONS = (
    "source",
    "referrer",
    "utm_medium",
    "utm_source",
    "utm_campaign",
    "utm_content",
    "utm_term",
    "screen",
    "device",
    "browser",
    "browser_version",
    "os",
    "os_version",
    "country",
    "region",
    "city",
    "entry_page",
    "exit_page",
)
EVENT_DIMENSIONS = ("name", "page", "goal")

# the only dimensions where * means "wildcard" rather than a literal star
WILDCARD_DIMENSIONS = frozenset({"page", "entry_page", "exit_page", "goal"})

# custom property names, kept to what can sit inside a json path
PROP_NAME = re.compile(r"^[\w.\- ]+$")

_UNESCAPED_PIPE = re.compile(r"(?<!\\)\|")
_LEGACY_EXPR = re.compile(r"^\s*([\w:]+)\s*(==|!=)\s*(.*?)\s*$")


def add_prefix(key: str) -> str:
    """Namespace a bare dimension name. Prefixed keys are checked and kept."""
    if key.startswith(PROPS_PREFIX):
        return props_key(key[len(PROPS_PREFIX):])
    if key.startswith(VISIT_PREFIX) and key[len(VISIT_PREFIX):] in VISIT_DIMENSIONS:
        return key
    if key.startswith(EVENT_PREFIX) and key[len(EVENT_PREFIX):] in EVENT_DIMENSIONS:
        return key
    if key in VISIT_DIMENSIONS:
        return VISIT_PREFIX + key
    if key in EVENT_DIMENSIONS:
        return EVENT_PREFIX + key
    raise QueryValidationError(f"Unknown filter: {key}")


def props_key(prop: str) -> str:
    if not PROP_NAME.match(prop):
        raise QueryValidationError(f"Unknown filter: {PROPS_PREFIX}{prop}")
    return PROPS_PREFIX + prop


def _bare_name(key: str) -> str:
    return key.rsplit(":", 1)[-1]


def filter_value(key: str, raw: str) -> FilterClause:
    """Parse one value expression into a clause for the given dimension."""
    value = str(raw)

    negated = value.startswith("!")
    if negated:
        value = value[1:]
    contains = value.startswith("~")
    if contains:
        value = value[1:]

    is_list = _UNESCAPED_PIPE.search(value) is not None
    is_wildcard = _bare_name(key) in WILDCARD_DIMENSIONS and "*" in value

    if is_list:
        values = tuple(v.replace("\\|", "|") for v in _UNESCAPED_PIPE.split(value))
    else:
        values = (value.replace("\\|", "|"),)

    if is_wildcard:
        return DoesNotMatchFilter(patterns=values) if negated else MatchesFilter(patterns=values)
    if contains and is_list:
        patterns = tuple(f"**{v}**" for v in values)
        return DoesNotMatchFilter(patterns=patterns) if negated else MatchesFilter(patterns=patterns)
    if contains:
        return DoesNotContainFilter(value=values[0]) if negated else ContainsFilter(value=values[0])
    if is_list:
        return NotMemberFilter(values=values) if negated else MemberFilter(values=values)
    return IsNotFilter(value=values[0]) if negated else IsFilter(value=values[0])


def _parse_props(raw: Any) -> tuple[str, FilterClause]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise QueryValidationError("Invalid props filter, expected {\"name\": \"value\"}") from e
    if not isinstance(raw, Mapping) or len(raw) != 1:
        raise QueryValidationError("Invalid props filter, expected exactly one property")
    [(prop, value)] = raw.items()
    return props_key(str(prop)), filter_value(prop, value)


def _parse_mapping(filters: Mapping[str, Any]) -> dict[str, FilterClause]:
    parsed: dict[str, FilterClause] = {}
    for key, value in filters.items():
        if value is None or value is False or value == "":
            # the dashboard clears a filter by sending it as false/empty
            continue
        if key == "props":
            prop_key, clause = _parse_props(value)
            parsed[prop_key] = clause
            continue
        parsed[add_prefix(key)] = filter_value(key, value)
    return parsed


def parse_filter_expression(expr: str) -> dict[str, FilterClause]:
    """Parse the legacy "key==value;key!=value" form."""
    parsed: dict[str, FilterClause] = {}
    for part in expr.split(";"):
        if not part.strip():
            continue
        match = _LEGACY_EXPR.match(part)
        if not match:
            raise QueryValidationError(f"Invalid filter expression: {part}")
        key, operator, value = match.groups()
        if operator == "!=":
            value = "!" + value

        parsed[add_prefix(key)] = filter_value(key, value)
    return parsed


def parse_filters(raw: str | Mapping[str, Any] | None) -> dict[str, FilterClause]:
    """Parse the filters request parameter into namespaced clauses.

    Raises:
        QueryValidationError: for unknown dimensions or malformed expressions.
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, Mapping):
        return _parse_mapping(raw)

    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return parse_filter_expression(raw)

    if isinstance(decoded, Mapping):
        return _parse_mapping(decoded)
    logger.debug("ignoring non-object filters param: %r", raw)
    return {}
