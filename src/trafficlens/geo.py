"""Geo reference data for enriching country/region/city breakdowns.

the store only knows codes (ISO 3166 alpha-2, ISO 3166-2 subdivisions,
geonames ids). names and flags come from this table, which is loaded once
and only ever read afterwards. a small builtin set covers tests and demos;
real deployments load the full table from yaml.
"""

from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict

from trafficlens.errors import LookupMiss


def flag_emoji(alpha_2: str) -> str:
    """Regional-indicator flag for a two letter country code."""
    if len(alpha_2) != 2 or not alpha_2.isalpha():
        return ""
    return "".join(chr(0x1F1E6 + ord(c) - ord("A")) for c in alpha_2.upper())


class Country(BaseModel):
    model_config = ConfigDict(frozen=True)

    alpha_2: str
    alpha_3: str
    name: str

    @property
    def flag(self) -> str:
        return flag_emoji(self.alpha_2)


class Subdivision(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str  # e.g. "DE-BE"
    name: str

    @property
    def country_code(self) -> str:
        return self.code.split("-", 1)[0]


class City(BaseModel):
    model_config = ConfigDict(frozen=True)

    geoname_id: int
    name: str
    country_code: str


class GeoLocations:
    """Read-only lookup tables keyed by code."""

    def __init__(
        self,
        countries: list[Country] | None = None,
        subdivisions: list[Subdivision] | None = None,
        cities: list[City] | None = None,
    ) -> None:
        self._countries = {c.alpha_2: c for c in countries or []}
        self._subdivisions = {s.code: s for s in subdivisions or []}
        self._cities = {c.geoname_id: c for c in cities or []}

    @classmethod
    def from_yaml(cls, path: str | Path) -> "GeoLocations":
        """Load tables from a yaml file with countries/subdivisions/cities lists."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls(
            countries=[Country.model_validate(c) for c in data.get("countries", [])],
            subdivisions=[Subdivision.model_validate(s) for s in data.get("subdivisions", [])],
            cities=[City.model_validate(c) for c in data.get("cities", [])],
        )

    def get_country(self, code: str | None) -> Country:
        country = self._countries.get(code) if code else None
        if country is None:
            raise LookupMiss("country", code)
        return country

    def get_subdivision(self, code: str | None) -> Subdivision:
        subdivision = self._subdivisions.get(code) if code else None
        if subdivision is None:
            raise LookupMiss("region", code)
        return subdivision

    def get_city(self, geoname_id: int | str | None) -> City:
        try:
            city = self._cities.get(int(geoname_id))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            city = None
        if city is None:
            raise LookupMiss("city", geoname_id)
        return city


_BUILTIN_COUNTRIES = [
    ("AT", "AUT", "Austria"),
    ("AU", "AUS", "Australia"),
    ("BE", "BEL", "Belgium"),
    ("BR", "BRA", "Brazil"),
    ("CA", "CAN", "Canada"),
    ("CH", "CHE", "Switzerland"),
    ("CN", "CHN", "China"),
    ("DE", "DEU", "Germany"),
    ("DK", "DNK", "Denmark"),
    ("EE", "EST", "Estonia"),
    ("ES", "ESP", "Spain"),
    ("FI", "FIN", "Finland"),
    ("FR", "FRA", "France"),
    ("GB", "GBR", "United Kingdom"),
    ("IE", "IRL", "Ireland"),
    ("IN", "IND", "India"),
    ("IT", "ITA", "Italy"),
    ("JP", "JPN", "Japan"),
    ("NL", "NLD", "Netherlands"),
    ("NO", "NOR", "Norway"),
    ("PL", "POL", "Poland"),
    ("PT", "PRT", "Portugal"),
    ("SE", "SWE", "Sweden"),
    ("US", "USA", "United States"),
]

_BUILTIN_SUBDIVISIONS = [
    ("DE-BE", "Berlin"),
    ("DE-BY", "Bavaria"),
    ("EE-37", "Harjumaa"),
    ("FR-IDF", "Île-de-France"),
    ("GB-ENG", "England"),
    ("US-CA", "California"),
    ("US-NY", "New York"),
]

_BUILTIN_CITIES = [
    (2950159, "Berlin", "DE"),
    (2867714, "Munich", "DE"),
    (588409, "Tallinn", "EE"),
    (2988507, "Paris", "FR"),
    (2643743, "London", "GB"),
    (5391959, "San Francisco", "US"),
    (5128581, "New York City", "US"),
]


@lru_cache(maxsize=1)
def default_locations() -> GeoLocations:
    """Process-wide builtin table, built on first use."""
    return GeoLocations(
        countries=[Country(alpha_2=a2, alpha_3=a3, name=n) for a2, a3, n in _BUILTIN_COUNTRIES],
        subdivisions=[Subdivision(code=c, name=n) for c, n in _BUILTIN_SUBDIVISIONS],
        cities=[City(geoname_id=g, name=n, country_code=cc) for g, n, cc in _BUILTIN_CITIES],
    )


def load_locations(path: str | Path | None) -> GeoLocations:
    """The table at path, or the builtin one when no path is configured."""
    if path is None:
        return default_locations()
    return GeoLocations.from_yaml(path)
