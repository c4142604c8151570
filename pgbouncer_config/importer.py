from typing import Iterable

import psycopg

from pgbouncer_config.config import Database
from pgbouncer_config.constants import LIST_DATABASES_SQL
from pgbouncer_config.logging import CONSOLE


def list_databases(
    host: str,
    port: int,
    user: str,
    password: str | None = None,
    dbname: str = "postgres",
    connect_timeout: int = 10,
) -> list[str]:
    """
    List the databases a live PostgreSQL server accepts connections for, leaving out
    templates.

    Args:
        host: Server host name or address
        port: Server port
        user: Role to connect as; it only needs to be able to read pg_database
        password: Password for `user`, if the server asks for one
        dbname: Database to connect to for running the catalog query
        connect_timeout: Seconds to wait for the connection before giving up

    Returns:
        Database names sorted alphabetically
    """
    connection_params = {
        "host": host,
        "port": port,
        "user": user,
        "dbname": dbname,
        "connect_timeout": connect_timeout,
    }
    if password is not None:
        connection_params["password"] = password

    with psycopg.connect(**connection_params) as conn:
        with conn.cursor() as cur:
            cur.execute(LIST_DATABASES_SQL)
            return [row[0] for row in cur.fetchall()]


def import_databases(
    host: str,
    port: int,
    user: str,
    password: str | None = None,
    dbname: str = "postgres",
    ignore_databases: Iterable[str] = (),
    connect_timeout: int = 10,
) -> dict[str, Database]:
    """
    Build one database entry per database on a live server, keyed by alias. Every entry
    points at the same host and port with the credentials used to connect, and uses the
    database name as its alias.

    """
    ignored = set(ignore_databases)
    databases: dict[str, Database] = {}

    for name in list_databases(host, port, user, password, dbname, connect_timeout):
        if name in ignored:
            CONSOLE.print(f"[yellow]Skipping ignored database {name}[/yellow]")
            continue
        databases[name] = Database(
            alias=name,
            host=host,
            port=port,
            dbname=name,
            user=user,
            password=password,
        )

    CONSOLE.print(f"Found {len(databases)} databases on {host}:{port}")
    return databases
