"""
CLI interface for pitr.

Provides commands to run a point-in-time recovery merge, inspect the shard
files of a binlog directory and convert between TSOs and datetimes.

Settings come from $PITR_HOME/config.yaml (or --config) and are overridden
by command-line options.
"""


import json
from pathlib import Path
from typing import Optional

import click

from pitr import __version__


@click.group()
@click.version_option(version=__version__, prog_name="pitr")
def main():
    """
    pitr - Point-in-time recovery merge.

    Merge TSO-stamped binlog shards into one commit-ordered event file.
    """


def _load_base_config(config_path: Optional[Path]):
    """Load the config file if one is given or exists at the default path."""
    from pitr.config import PitrConfig, get_pitr_home, load_config

    if config_path is not None:
        return load_config(config_path)
    default_path = get_pitr_home() / "config.yaml"
    if default_path.exists():
        return load_config(default_path)
    return PitrConfig()


def _or_none(values: tuple) -> Optional[list]:
    return list(values) if values else None


@main.command("run")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Config file (default $PITR_HOME/config.yaml)")
@click.option("--data-dir", type=click.Path(path_type=Path), help="Binlog directory to merge")
@click.option("--dest-dir", type=click.Path(path_type=Path), help="Directory for pitr-merged.jsonl")
@click.option("--start-tso", type=int, help="First commit TSO to keep (0: first event)")
@click.option("--stop-tso", type=int, help="Last commit TSO to keep (0: unbounded)")
@click.option("--start-datetime", help='Start as "YYYY-MM-DD HH:MM:SS" local time')
@click.option("--stop-datetime", help='Stop as "YYYY-MM-DD HH:MM:SS" local time')
@click.option("--schema-file", type=click.Path(path_type=Path), help="Base schema, one statement per line")
@click.option("--store-endpoints", help="Comma-separated store status endpoints for schema history")
@click.option("--store-timeout", type=int, help="Store request timeout in seconds")
@click.option("--ignore-db", "ignore_dbs", multiple=True, help="Database to skip (repeatable, ~regex)")
@click.option("--do-db", "do_dbs", multiple=True, help="Database to keep (repeatable, ~regex)")
@click.option("--ignore-table", "ignore_tables", multiple=True, help="db.table to skip (repeatable)")
@click.option("--do-table", "do_tables", multiple=True, help="db.table to keep (repeatable)")
@click.option("--reserve-temp-dir/--no-reserve-temp-dir", default=None, help="Keep the merge temp directory")
@click.option("--temp-dir", type=click.Path(path_type=Path), help="Parent of the merge temp directory")
@click.option("--map-workers", type=int, help="Shards mapped in parallel")
@click.option("--log-level", help="DEBUG, INFO, WARNING or ERROR")
@click.option("--log-file", type=click.Path(path_type=Path), help="Also log to this file")
@click.option("--log-format", type=click.Choice(["plain", "structured", "pretty"]), help="Log output format")
@click.option("--json", "as_json", is_flag=True, help="Print the run summary as JSON")
def run(config_path, as_json, ignore_dbs, do_dbs, ignore_tables, do_tables, **options):
    """Merge the binlog shards inside a TSO window."""
    from pitr.errors import PitrError
    from pitr.orchestrator import PITR
    from pitr.utils import format_size, setup_logging

    try:
        config = _load_base_config(config_path).with_overrides(
            ignore_dbs=_or_none(ignore_dbs),
            do_dbs=_or_none(do_dbs),
            ignore_tables=_or_none(ignore_tables),
            do_tables=_or_none(do_tables),
            **options,
        )
        config.validate()
    except PitrError as e:
        click.echo(f"✗ Invalid configuration: {e}", err=True)
        raise SystemExit(1)

    setup_logging(config.log_file, config.log_level, config.log_format)

    pitr = PITR(config)
    try:
        result = pitr.process()
    except PitrError as e:
        click.echo(f"✗ PITR failed: {e}", err=True)
        raise SystemExit(1)
    finally:
        pitr.close()

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    click.echo(f"✓ PITR done in {result.duration_ms} ms")
    click.echo(f"  Window:  {result.window}")
    click.echo(f"  Shards:  {result.shard_count} ({format_size(result.total_size)})")
    if result.reduced:
        click.echo(f"  Events:  {result.events_written}")
        click.echo(f"  Output:  {result.output_path}")
    else:
        click.echo("  No event found inside the window, nothing written")


@main.command("shards")
@click.argument("data_dir", type=click.Path(path_type=Path))
@click.option("--start-tso", type=int, default=0, help="Keep only shards that may hold events from this TSO")
@click.option("--stop-tso", type=int, default=0, help="Keep only shards that may hold events up to this TSO")
def shards(data_dir: Path, start_tso: int, stop_tso: int):
    """List the shard files of a binlog directory."""
    from rich.table import Table

    from pitr.errors import PitrError
    from pitr.shards import discover_files, filter_by_window
    from pitr.tso import DATETIME_FORMAT, tso_to_datetime
    from pitr.utils import console, format_size

    try:
        files = discover_files(data_dir)
        kept, total_size = filter_by_window(files, start_tso, stop_tso)
    except PitrError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    if not kept:
        click.echo(f"No binlog files found in {data_dir}.")
        return

    table = Table(title=f"{len(kept)} of {len(files)} binlog files")
    table.add_column("File")
    table.add_column("First commit TSO", justify="right")
    table.add_column("First commit time")
    table.add_column("Size", justify="right")
    for shard in kept:
        table.add_row(
            str(shard.path.relative_to(data_dir)),
            str(shard.first_commit_ts),
            tso_to_datetime(shard.first_commit_ts).strftime(DATETIME_FORMAT),
            format_size(shard.size),
        )
    console.print(table)
    click.echo(f"Total: {format_size(total_size)}")


@main.command("tso")
@click.argument("value")
@click.option("--utc", is_flag=True, help="Read and print datetimes in UTC instead of local time")
def tso(value: str, utc: bool):
    """
    Convert between a TSO and a datetime.

    VALUE is either a TSO (all digits) or "YYYY-MM-DD HH:MM:SS".
    """
    from datetime import timezone

    from pitr.tso import (
        DATETIME_FORMAT,
        datetime_to_tso,
        extract_logical,
        parse_datetime,
        tso_to_datetime,
    )

    tz = timezone.utc if utc else None
    if value.isdigit():
        moment = tso_to_datetime(int(value), tz=tz)
        click.echo(f"{moment.strftime(DATETIME_FORMAT)}.{moment.microsecond // 1000:03d} (logical {extract_logical(int(value))})")
        return

    try:
        moment = parse_datetime(value)
    except ValueError:
        raise click.BadParameter(f'expected a TSO or "YYYY-MM-DD HH:MM:SS", got {value!r}', param_hint="VALUE")
    if utc:
        moment = moment.replace(tzinfo=timezone.utc)
    click.echo(str(datetime_to_tso(moment)))


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize pitr configuration."""
    from pitr.config import get_pitr_home
    import yaml

    home = get_pitr_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = {
        "data_dir": "~/pitr/binlog",
        "dest_dir": "~/pitr/output",
        "start_tso": 0,
        "stop_tso": 0,
        "schema_file": None,
        "store_endpoints": [],
        "ignore_dbs": [],
        "ignore_tables": [],
        "reserve_temp_dir": False,
        "map_workers": 4,
        "log_level": "INFO",
        "log_format": "plain",
    }
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    click.echo(f"Initialized pitr config at {cfg_path}")


if __name__ == "__main__":
    main()
