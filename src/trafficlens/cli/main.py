"""CLI for TrafficLens."""

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from trafficlens.config import load_settings
from trafficlens.engine import REPORTS, StatsEngine
from trafficlens.errors import TrafficLensError
from trafficlens.formatting import result_csv, to_csv, to_jsonable
from trafficlens.models.report import BreakdownResult
from trafficlens.models.site import Site
from trafficlens.registry import SiteRegistry
from trafficlens.store.duckdb_store import DuckDBStore

app = typer.Typer(
    name="tl",
    help="TrafficLens - web analytics stats CLI",
    no_args_is_help=True,
)
console = Console()

EXTRA_REPORTS = ("referrer_drilldown", "conversions", "prop_breakdown", "all_props_breakdown")

# options shared by every report command
SitesOpt = Annotated[Path, typer.Option("--sites", help="Sites YAML file or directory")]
SiteOpt = Annotated[str, typer.Option("--site", "-s", help="Site domain")]
DbOpt = Annotated[str | None, typer.Option("--db", help="DuckDB database path")]
SettingsOpt = Annotated[Path | None, typer.Option("--settings", help="Engine settings YAML")]
PeriodOpt = Annotated[
    str | None,
    typer.Option("--period", "-p", help="realtime, day, 7d, 30d, month, 6mo, 12mo, year, all, custom"),
]
DateOpt = Annotated[str | None, typer.Option("--date", help="Anchor date (YYYY-MM-DD or today)")]
FromOpt = Annotated[str | None, typer.Option("--from", help="Custom range start (YYYY-MM-DD)")]
ToOpt = Annotated[str | None, typer.Option("--to", help="Custom range end (YYYY-MM-DD)")]
IntervalOpt = Annotated[
    str | None, typer.Option("--interval", "-i", help="minute, hour, date, week, month")
]
FiltersOpt = Annotated[
    str | None, typer.Option("--filters", "-f", help='JSON object, e.g. {"page":"/blog/**"}')
]
CompareOpt = Annotated[
    str | None, typer.Option("--compare", "-c", help="previous_period, year_over_year, custom, off")
]
CompareFromOpt = Annotated[str | None, typer.Option("--compare-from", help="Custom comparison start")]
CompareToOpt = Annotated[str | None, typer.Option("--compare-to", help="Custom comparison end")]
MatchDowOpt = Annotated[
    bool, typer.Option("--match-day-of-week", help="Align the comparison to the same weekdays")
]
ImportedOpt = Annotated[bool, typer.Option("--with-imported", help="Include imported data")]
LimitOpt = Annotated[int | None, typer.Option("--limit", "-l", help="Rows per page")]
PageOpt = Annotated[int | None, typer.Option("--page", help="Page number")]
OutputOpt = Annotated[str, typer.Option("--output", "-o", help="Output format: table, json, csv")]


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def get_site(sites_path: Path, domain: str) -> Site:
    registry = SiteRegistry()
    if sites_path.is_dir():
        registry.load_directory(sites_path)
    else:
        registry.load_file(sites_path)
    return registry.get_site(domain)


def get_engine(db_path: str | None, settings_path: Path | None) -> StatsEngine:
    return StatsEngine(DuckDBStore(db_path), settings=load_settings(settings_path))


def _load(
    sites_path: Path, domain: str, db_path: str | None, settings_path: Path | None
) -> tuple[Site, StatsEngine]:
    try:
        return get_site(sites_path, domain), get_engine(db_path, settings_path)
    except (OSError, KeyError, ValueError) as e:
        console.print(f"[red]Error loading site: {e}[/red]")
        raise typer.Exit(1)


def _params(**values: Any) -> dict[str, Any]:
    """Request params the way an HTTP layer would pass them - strings, no Nones."""
    params = {}
    for key, value in values.items():
        if value is None or value is False:
            continue
        params[key] = "true" if value is True else str(value)
    return params


@app.command("top-stats")
def top_stats(
    site: SiteOpt,
    sites_path: SitesOpt = Path("./sites.yaml"),
    db_path: DbOpt = None,
    settings_path: SettingsOpt = None,
    period: PeriodOpt = None,
    date: DateOpt = None,
    from_date: FromOpt = None,
    to_date: ToOpt = None,
    filters: FiltersOpt = None,
    compare: CompareOpt = None,
    compare_from: CompareFromOpt = None,
    compare_to: CompareToOpt = None,
    match_day_of_week: MatchDowOpt = False,
    with_imported: ImportedOpt = False,
    output: OutputOpt = "table",
) -> None:
    """Headline numbers for a period, with change vs the comparison."""
    site_obj, engine = _load(sites_path, site, db_path, settings_path)
    params = _params(
        period=period,
        date=date,
        filters=filters,
        comparison=compare,
        compare_from=compare_from,
        compare_to=compare_to,
        match_day_of_week=match_day_of_week,
        with_imported=with_imported,
        **{"from": from_date, "to": to_date},
    )

    try:
        report = engine.top_stats(site_obj, params)
    except TrafficLensError as e:
        console.print(f"[red]Query error: {e.message}[/red]")
        raise typer.Exit(1)

    rows = [stat.model_dump() for stat in report.top_stats]
    if output == "table":
        title = f"{site} {report.from_date} - {report.to_date}"
        if report.comparing_from:
            title += f" vs {report.comparing_from} - {report.comparing_to}"
        _print_table(rows, ["name", "value", "comparison_value", "change"], title)
    else:
        _output(to_jsonable(report), rows, ["name", "value", "comparison_value", "change"], output)


@app.command()
def graph(
    site: SiteOpt,
    sites_path: SitesOpt = Path("./sites.yaml"),
    db_path: DbOpt = None,
    settings_path: SettingsOpt = None,
    metric: Annotated[str, typer.Option("--metric", "-m", help="Metric to plot")] = "visitors",
    period: PeriodOpt = None,
    date: DateOpt = None,
    from_date: FromOpt = None,
    to_date: ToOpt = None,
    interval: IntervalOpt = None,
    filters: FiltersOpt = None,
    compare: CompareOpt = None,
    compare_from: CompareFromOpt = None,
    compare_to: CompareToOpt = None,
    match_day_of_week: MatchDowOpt = False,
    with_imported: ImportedOpt = False,
    output: OutputOpt = "table",
) -> None:
    """Timeseries of one metric, bucketed by interval."""
    site_obj, engine = _load(sites_path, site, db_path, settings_path)
    params = _params(
        metric=metric,
        period=period,
        date=date,
        interval=interval,
        filters=filters,
        comparison=compare,
        compare_from=compare_from,
        compare_to=compare_to,
        match_day_of_week=match_day_of_week,
        with_imported=with_imported,
        **{"from": from_date, "to": to_date},
    )

    try:
        result = engine.main_graph(site_obj, params)
    except TrafficLensError as e:
        console.print(f"[red]Query error: {e.message}[/red]")
        raise typer.Exit(1)

    rows = []
    for i, label in enumerate(result.labels):
        row = {"date": label, metric: result.plot[i] if i < len(result.plot) else None}
        if result.comparison_plot is not None:
            row["comparison"] = result.comparison_plot[i] if i < len(result.comparison_plot) else None
        rows.append(row)
    columns = list(rows[0]) if rows else ["date", metric]

    if output == "table":
        _print_table(rows, columns, f"{metric} by {result.interval}", highlight=result.present_index)
    else:
        _output(to_jsonable(result), rows, columns, output)


@app.command()
def breakdown(
    report: Annotated[str, typer.Argument(help="Report name, e.g. sources, pages, countries")],
    site: SiteOpt,
    sites_path: SitesOpt = Path("./sites.yaml"),
    db_path: DbOpt = None,
    settings_path: SettingsOpt = None,
    period: PeriodOpt = None,
    date: DateOpt = None,
    from_date: FromOpt = None,
    to_date: ToOpt = None,
    filters: FiltersOpt = None,
    with_imported: ImportedOpt = False,
    limit: LimitOpt = None,
    page: PageOpt = None,
    detailed: Annotated[bool, typer.Option("--detailed", help="Include bounce rate and durations")] = False,
    referrer: Annotated[str | None, typer.Option("--referrer", help="Source for referrer_drilldown")] = None,
    prop_name: Annotated[str | None, typer.Option("--prop", help="Property for prop_breakdown")] = None,
    output: OutputOpt = "table",
) -> None:
    """Top values of one dimension."""
    if report not in REPORTS and report not in EXTRA_REPORTS:
        names = ", ".join(sorted([*REPORTS, *EXTRA_REPORTS]))
        console.print(f"[red]Unknown report: {report}. Use: {names}[/red]")
        raise typer.Exit(1)

    site_obj, engine = _load(sites_path, site, db_path, settings_path)
    params = _params(
        period=period,
        date=date,
        filters=filters,
        with_imported=with_imported,
        limit=limit,
        page=page,
        detailed=detailed,
        referrer=referrer,
        prop_name=prop_name,
        **{"from": from_date, "to": to_date},
    )

    try:
        result = engine.breakdown(site_obj, report, params)
    except TrafficLensError as e:
        console.print(f"[red]Query error: {e.message}[/red]")
        raise typer.Exit(1)

    _output_breakdown(result, report, output)


@app.command()
def conversions(
    site: SiteOpt,
    sites_path: SitesOpt = Path("./sites.yaml"),
    db_path: DbOpt = None,
    settings_path: SettingsOpt = None,
    period: PeriodOpt = None,
    date: DateOpt = None,
    from_date: FromOpt = None,
    to_date: ToOpt = None,
    filters: FiltersOpt = None,
    output: OutputOpt = "table",
) -> None:
    """Goal conversions and conversion rates."""
    site_obj, engine = _load(sites_path, site, db_path, settings_path)
    params = _params(period=period, date=date, filters=filters, **{"from": from_date, "to": to_date})

    try:
        result = engine.conversions(site_obj, params)
    except TrafficLensError as e:
        console.print(f"[red]Query error: {e.message}[/red]")
        raise typer.Exit(1)

    _output_breakdown(result, "conversions", output)


@app.command("check-query")
def check_query(
    site: SiteOpt,
    sites_path: SitesOpt = Path("./sites.yaml"),
    settings_path: SettingsOpt = None,
    period: PeriodOpt = None,
    date: DateOpt = None,
    from_date: FromOpt = None,
    to_date: ToOpt = None,
    interval: IntervalOpt = None,
    filters: FiltersOpt = None,
    compare: CompareOpt = None,
    compare_from: CompareFromOpt = None,
    compare_to: CompareToOpt = None,
    match_day_of_week: MatchDowOpt = False,
    with_imported: ImportedOpt = False,
    show_sql: Annotated[bool, typer.Option("--sql", help="Show the aggregate SQL")] = False,
) -> None:
    """Resolve parameters into a query (and its comparison) without running it."""
    site_obj, engine = _load(sites_path, site, None, settings_path)
    params = _params(
        period=period,
        date=date,
        interval=interval,
        filters=filters,
        comparison=compare,
        compare_from=compare_from,
        compare_to=compare_to,
        match_day_of_week=match_day_of_week,
        with_imported=with_imported,
        **{"from": from_date, "to": to_date},
    )

    try:
        query = engine.query(site_obj, params)
        comparison = engine.comparison(site_obj, query, params)
    except TrafficLensError as e:
        console.print(f"[red]Invalid query: {e.message}[/red]")
        raise typer.Exit(1)

    payload = {
        "query": to_jsonable(query),
        "comparison": to_jsonable(comparison) if comparison else None,
    }
    typer.echo(json.dumps(payload, indent=2))

    if show_sql:
        builder = engine.store.builder
        sql = builder.aggregate(site_obj, query, ["visitors", "pageviews"], site_obj.now())
        console.print(Syntax(builder.format_sql(sql), "sql", theme="monokai", line_numbers=True))


def _output_breakdown(result: BreakdownResult, report: str, output_format: str) -> None:
    columns = list(result.results[0]) if result.results else ["name"]
    if output_format == "csv":
        # plain echo, rich would wrap long lines
        typer.echo(result_csv(result), nl=False)
    elif output_format == "json":
        typer.echo(json.dumps(to_jsonable(result), indent=2))
    else:
        _print_table(result.results, columns, f"{report} {result.from_date} - {result.to_date}")


def _output(payload: Any, rows: list[dict[str, Any]], columns: list[str], output_format: str) -> None:
    """Output a report as json or csv."""
    if output_format == "csv":
        typer.echo(to_csv(to_jsonable(rows), columns), nl=False)
    else:
        typer.echo(json.dumps(payload, indent=2))


def _print_table(
    rows: list[dict[str, Any]],
    columns: list[str],
    title: str,
    highlight: int | None = None,
) -> None:
    table = Table(title=f"{title} ({len(rows)} rows)")
    for col in columns:
        table.add_column(col, style="cyan" if col in ("name", "date") else None)

    for i, row in enumerate(rows):
        values = ["-" if row.get(c) is None else str(row.get(c)) for c in columns]
        table.add_row(*values, style="bold green" if i == highlight else None)

    console.print(table)


if __name__ == "__main__":
    app()
