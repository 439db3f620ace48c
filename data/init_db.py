"""Initialize a DuckDB database with the sample events."""

from trafficlens.store.duckdb_store import DuckDBStore


def init_database(db_path: str = "data/trafficlens.duckdb"):
    """Create a DuckDB database with sample events loaded."""
    with DuckDBStore(db_path) as store:
        store.load_parquet("data/events.parquet")
        print(f"Database initialized at {db_path}")

        # Show stats
        events = store.conn.execute("SELECT COUNT(*) FROM events").fetchone()[0]
        sites = store.conn.execute("SELECT COUNT(DISTINCT domain) FROM events").fetchone()[0]
        print(f"  - {events} events")
        print(f"  - {sites} sites")


if __name__ == "__main__":
    init_database()
