"""Pydantic models for filter clauses.

a filter clause is one operator plus its value(s), keyed by a dimension in the
query's filter mapping. the `op` literal is the discriminator so pydantic can
pick the right class when a clause comes in as a plain dict (json bodies,
yaml fixtures).
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class _Clause(BaseModel):
    model_config = ConfigDict(frozen=True)


class IsFilter(_Clause):
    op: Literal["is"] = "is"
    value: str


class IsNotFilter(_Clause):
    op: Literal["is_not"] = "is_not"
    value: str


class MemberFilter(_Clause):
    """OR over a set of values."""

    op: Literal["member"] = "member"
    values: tuple[str, ...]


class NotMemberFilter(_Clause):
    op: Literal["is_not_member"] = "is_not_member"
    values: tuple[str, ...]


class ContainsFilter(_Clause):
    op: Literal["contains"] = "contains"
    value: str


class DoesNotContainFilter(_Clause):
    op: Literal["does_not_contain"] = "does_not_contain"
    value: str


class MatchesFilter(_Clause):
    """Any of some glob patterns - `**` matches anything, `*` anything but a slash."""

    op: Literal["matches"] = "matches"
    patterns: tuple[str, ...]


class DoesNotMatchFilter(_Clause):
    op: Literal["does_not_match"] = "does_not_match"
    patterns: tuple[str, ...]


FilterClause = Annotated[
    Union[
        IsFilter,
        IsNotFilter,
        MemberFilter,
        NotMemberFilter,
        ContainsFilter,
        DoesNotContainFilter,
        MatchesFilter,
        DoesNotMatchFilter,
    ],
    Field(discriminator="op"),
]


def clause_values(clause: FilterClause) -> tuple[str, ...]:
    """Flatten a clause's operand(s) into a tuple."""
    if isinstance(clause, (MemberFilter, NotMemberFilter)):
        return clause.values
    if isinstance(clause, (MatchesFilter, DoesNotMatchFilter)):
        return clause.patterns
    return (clause.value,)
