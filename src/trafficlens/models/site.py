"""Pydantic models for sites, goals and imported data.

these are read-only reference data as far as the query engine is concerned.
they get loaded once (see registry.py) and passed into every request.
"""

from datetime import date, datetime
from typing import Self
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ImportedData(BaseModel):
    """Historical data merged in from an external analytics tool."""

    model_config = ConfigDict(frozen=True)

    source: str = "Google Analytics"
    status: str = "ok"  # importing, ok, error
    start_date: date | None = None
    end_date: date


class Goal(BaseModel):
    """A conversion goal - either a custom event name or a pageview path."""

    model_config = ConfigDict(frozen=True)

    event_name: str | None = None
    page_path: str | None = None

    @model_validator(mode="after")
    def validate_event_name_and_page_path(self) -> Self:
        if self.page_path is not None and self.page_path.strip().startswith("/"):
            return self
        if self.event_name is not None and self.event_name.strip():
            return self
        raise ValueError(
            "goal needs a non-blank event_name or a page_path starting with /"
        )

    @property
    def goal_type(self) -> str:
        return "event" if self.event_name else "page"

    @property
    def display_name(self) -> str:
        # page goals are addressed as "Visit /path" in filters and breakdowns
        if self.page_path:
            return "Visit " + self.page_path.strip()
        return (self.event_name or "").strip()


class Site(BaseModel):
    """A tracked site."""

    model_config = ConfigDict(frozen=True)

    domain: str
    timezone: str = "Etc/UTC"
    stats_start_date: date | None = None  # first recorded event, local calendar
    imported_data: ImportedData | None = None
    goals: tuple[Goal, ...] = Field(default_factory=tuple)

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone: {value}") from e
        return value

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def now(self, now: datetime | None = None) -> datetime:
        """Current wall-clock time in the site's timezone.

        `now` lets callers pin the clock; naive datetimes are taken as UTC.
        """
        if now is None:
            return datetime.now(self.tz)
        if now.tzinfo is None:
            now = now.replace(tzinfo=ZoneInfo("UTC"))
        return now.astimezone(self.tz)

    def today(self, now: datetime | None = None) -> date:
        return self.now(now).date()

    def get_goal(self, display_name: str) -> Goal | None:
        for goal in self.goals:
            if goal.display_name == display_name:
                return goal
        return None
