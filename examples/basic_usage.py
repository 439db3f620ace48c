"""Basic usage example for TrafficLens."""

import sys
from datetime import datetime, timezone
from pathlib import Path

# Add parent to path for development
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent.parent / "data"))

from generate_sample_data import generate_sample_data

from trafficlens import SiteRegistry, StatsEngine


def main():
    """Demonstrate TrafficLens reports over generated sample events."""
    registry = SiteRegistry()
    registry.load_file(Path(__file__).parent.parent / "data" / "sites.yaml")
    site = registry.get_site("example.com")

    # sample data covers Jan-Mar 2024, pin "now" to the end of it
    store = generate_sample_data()
    engine = StatsEngine(store, clock=lambda: datetime(2024, 3, 31, 18, 0, tzinfo=timezone.utc))

    print("=" * 60)
    print("TrafficLens Web Analytics Demo")
    print("=" * 60)

    # 1. Top stats with the previous period for comparison
    print("\n1. Top stats, last 30 days:")
    report = engine.top_stats(site, {"period": "30d"})
    print(f"   {report.from_date} - {report.to_date} vs {report.comparing_from} - {report.comparing_to}")
    for stat in report.top_stats:
        change = "" if stat.change is None else f" ({stat.change:+})"
        print(f"   {stat.name}: {stat.value}{change}")

    # 2. Top sources
    print("\n2. Top sources:")
    result = engine.breakdown(site, "sources", {"period": "30d", "limit": "5"})
    for row in result.results:
        print(f"   {row['name']}: {row['visitors']} visitors")

    # 3. Sources with conversion rates for a goal
    print("\n3. Sources converting to Signup:")
    result = engine.breakdown(site, "sources", {"period": "30d", "filters": '{"goal": "Signup"}'})
    for row in result.results:
        print(f"   {row['name']}: {row['visitors']} conversions, {row['conversion_rate']}% CR")

    # 4. Visitors by week
    print("\n4. Visitors by week (6 months):")
    graph = engine.main_graph(site, {"period": "6mo", "interval": "week"})
    for label, value in zip(graph.labels, graph.plot):
        partial = "" if (graph.full_intervals or {}).get(label, True) else " (partial)"
        print(f"   {label}: {value}{partial}")

    # 5. Countries with names and flags
    print("\n5. Countries:")
    result = engine.breakdown(site, "countries", {"period": "30d"})
    for row in result.results:
        print(f"   {row['flag']} {row['name']}: {row['visitors']} ({row['percentage']}%)")

    # 6. Goals and custom properties
    print("\n6. Conversions:")
    result = engine.conversions(site, {"period": "30d", "filters": '{"goal": "Signup"}'})
    for row in result.results:
        print(f"   {row['name']}: {row['unique_conversions']} ({row['conversion_rate']}%), props {row['prop_names']}")
    result = engine.prop_breakdown(site, {"period": "30d", "filters": '{"goal": "Signup"}', "prop_name": "plan"})
    for row in result.results:
        print(f"   plan={row['name']}: {row['unique_conversions']}")

    # 7. Show generated SQL
    print("\n7. Generated SQL for blog visitors:")
    query = engine.query(site, {"period": "30d", "filters": '{"page": "/blog/**"}'})
    sql = store.builder.aggregate(site, query, ["visitors"], datetime.now(timezone.utc))
    print(store.builder.format_sql(sql))

    print("\n" + "=" * 60)
    print("Demo complete!")
    print("=" * 60)

    store.close()


if __name__ == "__main__":
    main()
