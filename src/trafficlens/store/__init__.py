"""Event store interface and the DuckDB reference implementation."""

from trafficlens.store.base import METRICS, Row, StatsStore, dimension_column
from trafficlens.store.duckdb_store import DuckDBStore

__all__ = ["METRICS", "DuckDBStore", "Row", "StatsStore", "dimension_column"]
