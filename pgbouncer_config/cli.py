import json
import sys
from pathlib import Path
from typing import Any, NoReturn

import click
import psycopg
from pydantic_settings import BaseSettings
from rich.markup import escape
from rich.table import Table

from pgbouncer_config.builder import PgBouncerConfigBuilder
from pgbouncer_config.config import Database
from pgbouncer_config.constants import DEFAULT_DEFINITION_PATH, DEFAULT_INI_PATH
from pgbouncer_config.definition import (
    default_definition,
    load_definition,
    save_definition,
)
from pgbouncer_config.diff import ChangeStatus, ConfigDiff, diff_definition
from pgbouncer_config.errors import PgBouncerConfigError
from pgbouncer_config.importer import import_databases
from pgbouncer_config.ini import load_ini, save_ini
from pgbouncer_config.logging import CONSOLE, ERROR_CONSOLE

CLI_ERRORS = (PgBouncerConfigError, OSError)


class PathOverrides(BaseSettings):
    """
    Default file locations, overridable through the environment so a deployment can
    point every command at the same files without repeating the options.
    """

    DEFINITION_PATH: str = DEFAULT_DEFINITION_PATH
    INI_PATH: str = DEFAULT_INI_PATH

    model_config = {"env_file": ".env", "env_prefix": "PGBOUNCER_CONFIG_"}


def resolve_definition_path(definition_path: str | None) -> Path:
    return Path(definition_path or PathOverrides().DEFINITION_PATH)


def resolve_ini_path(ini_path: str | None) -> Path:
    return Path(ini_path or PathOverrides().INI_PATH)


def fail(message: str) -> NoReturn:
    ERROR_CONSOLE.print(f"[red]Error: {escape(message)}[/red]")
    sys.exit(1)


def parse_extra_params(
    ctx: click.Context, param: click.Parameter, values: tuple[str, ...]
) -> dict[str, str]:
    extra: dict[str, str] = {}
    for value in values:
        key, separator, raw_value = value.partition("=")
        if not separator or not key:
            raise click.BadParameter(f"'{value}' is not in key=value form")
        extra[key] = raw_value
    return extra


def format_change_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return ", ".join(str(item) for item in value)
    if isinstance(value, dict):
        return " ".join(f"{key}={item}" for key, item in value.items() if key != "alias")
    return str(value)


def display_config_diff(result: ConfigDiff) -> None:
    """Display the drift between pgbouncer.ini and the definition in a rich table"""
    if result.is_empty:
        CONSOLE.print("[green]pgbouncer.ini matches the definition.[/green]")
        return

    table = Table(title="pgbouncer.ini drift")
    table.add_column("Section")
    table.add_column("Key")
    table.add_column("Change")
    table.add_column("Current Value")
    table.add_column("Desired Value")

    for key, change in result.pgbouncer_changes.items():
        table.add_row(
            "pgbouncer",
            key,
            change.status.value,
            escape(format_change_value(change.old)),
            escape(format_change_value(change.new)),
        )

    for alias, database_change in result.database_changes.items():
        if database_change.status == ChangeStatus.ADDED:
            table.add_row(
                "databases", alias, "added", "", escape(format_change_value(database_change.value))
            )
        elif database_change.status == ChangeStatus.REMOVED:
            table.add_row(
                "databases",
                alias,
                "removed",
                escape(format_change_value(database_change.value)),
                "",
            )
        else:
            for attribute, change in database_change.changes.items():
                table.add_row(
                    "databases",
                    f"{alias}.{attribute}",
                    change.status.value,
                    escape(format_change_value(change.old)),
                    escape(format_change_value(change.new)),
                )

    CONSOLE.print(table)


@click.group()
def cli() -> None:
    """pgbouncer-config CLI tool for managing pgbouncer.ini from a definition file."""
    pass


@cli.command()
@click.option("--definition-path", default=None, help="Path to the definition file to create")
@click.option("--force", is_flag=True, help="Overwrite an existing definition")
def init(definition_path: str | None, force: bool) -> None:
    """Write a starter definition with one placeholder database."""
    path = resolve_definition_path(definition_path)
    if path.exists() and not force:
        fail(f"Definition already exists at {path}; pass --force to overwrite it")

    try:
        save_definition(default_definition(with_placeholder=True), path)
    except CLI_ERRORS as e:
        fail(str(e))

    CONSOLE.print(f"[green]Wrote a new definition to {escape(str(path))}[/green]")


@cli.command("add-database")
@click.option("--definition-path", default=None, help="Path to the definition file")
@click.option("--alias", required=True, help="Name clients use to reach this database")
@click.option("--host", required=True, help="PostgreSQL host")
@click.option("--port", type=int, default=5432, show_default=True, help="PostgreSQL port")
@click.option("--dbname", required=True, help="Database name on the PostgreSQL server")
@click.option("--user", default=None, help="Role pgbouncer connects as")
@click.option("--password", default=None, help="Password, or $NAME to read it at generate time")
@click.option(
    "--extra",
    multiple=True,
    callback=parse_extra_params,
    help="Additional connection parameter as key=value; may be repeated",
)
@click.option(
    "--allow-not-exist",
    is_flag=True,
    help="Start from a default definition when the file does not exist yet",
)
def add_database(
    definition_path: str | None,
    alias: str,
    host: str,
    port: int,
    dbname: str,
    user: str | None,
    password: str | None,
    extra: dict[str, str],
    allow_not_exist: bool,
) -> None:
    """Add a database entry to the definition."""
    path = resolve_definition_path(definition_path)

    try:
        definition = load_definition(path, allow_not_exist=allow_not_exist)
        databases = definition.config.databases.unlocked_copy()
        databases.add(
            Database(
                alias=alias,
                host=host,
                port=port,
                dbname=dbname,
                user=user,
                password=password,
                extra=extra,
            )
        )
        config = (
            PgBouncerConfigBuilder.from_config(definition.config)
            .replace_databases_setting(databases)
            .build()
        )
        save_definition(definition.with_config(config), path)
    except CLI_ERRORS as e:
        fail(str(e))

    CONSOLE.print(f"[green]Added database {escape(alias)}[/green]")


@cli.command("ignore-database")
@click.argument("alias")
@click.option("--definition-path", default=None, help="Path to the definition file")
def ignore_database(alias: str, definition_path: str | None) -> None:
    """Leave a database out of diffs and imports."""
    path = resolve_definition_path(definition_path)

    try:
        definition = load_definition(path)
        if alias in definition.ignore_databases:
            CONSOLE.print(f"Database {escape(alias)} is already ignored")
            return
        save_definition(definition.with_ignored_database(alias), path)
    except CLI_ERRORS as e:
        fail(str(e))

    CONSOLE.print(f"[green]Ignoring database {escape(alias)}[/green]")


@cli.command("import")
@click.option("--definition-path", default=None, help="Path to the definition file")
@click.option("--host", required=True, help="PostgreSQL host to list databases from")
@click.option("--port", type=int, default=5432, show_default=True, help="PostgreSQL port")
@click.option("--user", required=True, help="Role to connect as")
@click.option("--password", default=None, help="Password for the role")
@click.option(
    "--dbname", default="postgres", show_default=True, help="Database to run the listing in"
)
@click.option(
    "--allow-not-exist",
    is_flag=True,
    help="Start from a default definition when the file does not exist yet",
)
def import_(
    definition_path: str | None,
    host: str,
    port: int,
    user: str,
    password: str | None,
    dbname: str,
    allow_not_exist: bool,
) -> None:
    """Add every database found on a live PostgreSQL server to the definition."""
    path = resolve_definition_path(definition_path)

    try:
        definition = load_definition(path, allow_not_exist=allow_not_exist)
        imported = import_databases(
            host,
            port,
            user,
            password,
            dbname=dbname,
            ignore_databases=definition.ignore_databases,
        )
        databases = definition.config.databases.unlocked_copy()
        databases.merge(imported)
        config = (
            PgBouncerConfigBuilder.from_config(definition.config)
            .replace_databases_setting(databases)
            .build()
        )
        save_definition(definition.with_config(config), path)
    except psycopg.Error as e:
        fail(f"Could not list databases on {host}:{port}: {e}")
    except CLI_ERRORS as e:
        fail(str(e))

    CONSOLE.print(f"[green]Imported {len(imported)} databases[/green]")


@cli.command()
@click.option("--definition-path", default=None, help="Path to the definition file")
@click.option("--ini-path", default=None, help="Where to write pgbouncer.ini")
@click.option("--no-overwrite", is_flag=True, help="Fail if pgbouncer.ini already exists")
def generate(definition_path: str | None, ini_path: str | None, no_overwrite: bool) -> None:
    """Generate pgbouncer.ini from the definition."""
    definition_file = resolve_definition_path(definition_path)
    ini_file = resolve_ini_path(ini_path)

    if no_overwrite and ini_file.exists():
        fail(f"{ini_file} already exists")

    try:
        # Secrets are only resolved here, never in the stored definition
        definition = load_definition(definition_file, resolve_env=True)
        save_ini(
            definition.config,
            ini_file,
            output_credentials=definition.output_credentials,
            section_comments={"pgbouncer": f"Generated by pgbouncer-config from {definition_file}"},
            exclude=definition.ignore_databases,
        )
    except CLI_ERRORS as e:
        fail(f"Error generating configuration: {e}")

    CONSOLE.print(f"[green]Successfully wrote configuration to {escape(str(ini_file))}[/green]")


@cli.command()
@click.option("--definition-path", default=None, help="Path to the definition file")
@click.option("--ini-path", default=None, help="Path to the deployed pgbouncer.ini")
@click.option("--json", "as_json", is_flag=True, help="Print the drift as JSON")
def diff(definition_path: str | None, ini_path: str | None, as_json: bool) -> None:
    """Show how the deployed pgbouncer.ini differs from the definition."""
    try:
        current = load_ini(resolve_ini_path(ini_path))
        definition = load_definition(resolve_definition_path(definition_path), resolve_env=True)
        result = diff_definition(current, definition)
    except CLI_ERRORS as e:
        fail(str(e))

    if as_json:
        click.echo(json.dumps(result.as_json(), indent=2))
    else:
        display_config_diff(result)


@cli.command()
@click.option("--definition-path", default=None, help="Path to the definition file")
def validate(definition_path: str | None) -> None:
    """Validate the definition file."""
    path = resolve_definition_path(definition_path)

    try:
        definition = load_definition(path)
    except CLI_ERRORS as e:
        fail(f"Configuration validation error: {e}")

    CONSOLE.print(
        f"[green]Definition at {escape(str(path))} is valid "
        f"({len(definition.config.databases)} databases).[/green]"
    )


if __name__ == "__main__":
    cli()
