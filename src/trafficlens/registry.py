"""YAML loader and registry for site definitions.

sites are reference data for the engine - timezone, first stats date,
imported data and goals. they live in yaml next to the database so the cli
(and tests) don't need a real app database to look them up.

    sites:
      - domain: example.com
        timezone: Europe/Tallinn
        stats_start_date: 2023-01-10
        imported_data: {source: Google Analytics, end_date: 2022-12-31}
        goals:
          - event_name: Signup
          - page_path: /register
"""

import logging
from pathlib import Path

import yaml

from trafficlens.models.site import Site

logger = logging.getLogger(__name__)


class SiteRegistry:
    """Lookup of sites by domain, loaded once."""

    def __init__(self, sites: list[Site] | None = None) -> None:
        self.sites: dict[str, Site] = {}
        for site in sites or []:
            self.add(site)

    def add(self, site: Site) -> None:
        if site.domain in self.sites:
            raise ValueError(f"Duplicate site: {site.domain}")
        self.sites[site.domain] = site

    def load_directory(self, path: str | Path) -> None:
        """Load every yaml/yml file under path."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Sites directory not found: {path}")

        yaml_files = sorted(list(path.glob("**/*.yaml")) + list(path.glob("**/*.yml")))
        if not yaml_files:
            raise ValueError(f"No YAML files found in {path}")

        for yaml_file in yaml_files:
            self.load_file(yaml_file)

    def load_file(self, path: str | Path) -> None:
        """Parse one yaml file. Empty files are ignored."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Sites file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f)

        if data is None:
            return

        for site_data in data.get("sites", []):
            self.add(Site.model_validate(site_data))
        logger.debug("loaded sites from %s, %d known", path, len(self.sites))

    def get_site(self, domain: str) -> Site:
        if domain not in self.sites:
            raise KeyError(f"Unknown site: {domain}")
        return self.sites[domain]
