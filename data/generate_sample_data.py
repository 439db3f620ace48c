"""Generate sample pageview and custom event data for TrafficLens testing."""

import random
from datetime import datetime, timedelta
from pathlib import Path

import duckdb

from trafficlens.store.duckdb_store import DuckDBStore

SOURCES = ["Google", "Google", "Google", "Twitter", "Hacker News", "DuckDuckGo", None, None]
PAGES = ["/", "/", "/pricing", "/blog", "/blog/launch", "/blog/privacy", "/docs", "/register"]
BROWSERS = [("Chrome", "122.0"), ("Chrome", "121.0"), ("Firefox", "123.0"), ("Safari", "17.3")]
SYSTEMS = [("Mac", "14.3"), ("Windows", "11"), ("GNU/Linux", None), ("iOS", "17.3")]
SCREENS = ["Desktop", "Desktop", "Laptop", "Mobile", "Tablet"]
LOCATIONS = [
    ("EE", "EE-37", 588409),
    ("DE", "DE-BE", 2950159),
    ("DE", "DE-BY", 2867714),
    ("US", "US-CA", 5391959),
    ("US", "US-NY", 5128581),
    ("GB", "GB-ENG", 2643743),
    ("FR", "FR-IDF", 2988507),
]
PLANS = ["free", "free", "pro", "team"]


def generate_sample_data(output_dir: Path | None = None, domain: str = "example.com") -> DuckDBStore:
    """Generate sample events for one site.

    Args:
        output_dir: Directory to save events.parquet, or None for in-memory only.
        domain: Site domain the events belong to.

    Returns:
        In-memory DuckDBStore with the events loaded.
    """
    random.seed(42)  # Reproducible data

    events = generate_events(domain, sessions=2000)

    store = DuckDBStore()
    store.insert_events(events)

    # Export to Parquet if output_dir provided
    if output_dir:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        store.conn.execute(f"COPY events TO '{output_dir}/events.parquet' (FORMAT PARQUET)")
        print(f"Data exported to {output_dir}")

    return store


def generate_events(domain: str, sessions: int) -> list[dict]:
    """Generate sessions of pageviews, some ending in a Signup event."""
    start = datetime(2024, 1, 1)
    span_minutes = 90 * 24 * 60

    events = []
    for session_id in range(1, sessions + 1):
        user_id = random.randint(1, sessions // 2)
        ts = start + timedelta(minutes=random.randint(0, span_minutes))
        source = random.choice(SOURCES)
        browser, browser_version = random.choice(BROWSERS)
        os_name, os_version = random.choice(SYSTEMS)
        country, region, city = random.choice(LOCATIONS)

        path = [random.choice(PAGES) for _ in range(random.choice([1, 1, 2, 3, 5]))]
        session = {
            "domain": domain,
            "user_id": user_id,
            "session_id": session_id,
            "referrer_source": source,
            "referrer": f"https://{source.lower().replace(' ', '')}.com/" if source else None,
            "utm_medium": "social" if source == "Twitter" else None,
            "utm_source": source.lower() if source == "Twitter" else None,
            "entry_page": path[0],
            "exit_page": path[-1],
            "screen_size": random.choice(SCREENS),
            "browser": browser,
            "browser_version": browser_version,
            "operating_system": os_name,
            "operating_system_version": os_version,
            "country_code": country,
            "subdivision1_code": region,
            "city_geoname_id": city,
        }

        for pathname in path:
            events.append({**session, "timestamp": ts, "name": "pageview", "pathname": pathname})
            ts += timedelta(seconds=random.randint(5, 240))

        if path[-1] == "/register" and random.random() < 0.6:
            events.append(
                {
                    **session,
                    "timestamp": ts,
                    "name": "Signup",
                    "pathname": "/register",
                    "props": {"plan": random.choice(PLANS)},
                }
            )

    return events


if __name__ == "__main__":
    import sys

    output_dir = Path(sys.argv[1]) if len(sys.argv) > 1 else Path(__file__).parent
    store = generate_sample_data(output_dir)

    # Print summary
    conn: duckdb.DuckDBPyConnection = store.conn
    result = conn.execute("SELECT COUNT(*) FROM events").fetchone()
    print(f"Generated {result[0]} events")

    result = conn.execute("SELECT COUNT(DISTINCT session_id) FROM events").fetchone()
    print(f"Generated {result[0]} sessions")

    result = conn.execute("SELECT COUNT(*) FROM events WHERE name = 'Signup'").fetchone()
    print(f"Signups: {result[0]}")

    store.close()
