from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Callable, Generator

import pytest

from pgbouncer_config.builder import PgBouncerConfigBuilder
from pgbouncer_config.config import Database, DatabasesSetting, PgBouncerConfig, PgBouncerSetting


@pytest.fixture(scope="session")
def project_root() -> Path:
    """
    Find the project root by walking up to the directory holding pyproject.toml.

    Returns:
        pathlib.Path: Path to the project root
    """
    current_dir = Path(__file__).resolve().parent

    while current_dir != current_dir.parent:
        if (current_dir / "pyproject.toml").exists():
            return current_dir
        current_dir = current_dir.parent

    raise FileNotFoundError("Could not find project root (pyproject.toml)")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture that provides a temporary directory as a Path object."""
    with TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


def build_config(
    setting: PgBouncerSetting | None = None, databases: list[Database] | None = None
) -> PgBouncerConfig:
    return (
        PgBouncerConfigBuilder()
        .set_pgbouncer_setting(setting or PgBouncerSetting())
        .set_databases_setting(DatabasesSetting(databases=databases or []))
        .build()
    )


@pytest.fixture
def make_config() -> Callable[..., PgBouncerConfig]:
    """Build a config from a [pgbouncer] setting and a list of databases."""
    return build_config


@pytest.fixture
def sample_config() -> PgBouncerConfig:
    """Two databases behind a transaction-pooling listener on all interfaces."""
    return build_config(
        PgBouncerSetting(
            listen_addr="0.0.0.0",
            listen_port=6432,
            auth_type="md5",
            pool_mode="transaction",
            admin_users=["admin"],
            auth_file="/etc/pgbouncer/userlist.txt",
            server_idle_timeout=600,
        ),
        [
            Database(
                alias="app",
                host="db1.internal",
                port=5432,
                dbname="app",
                user="app_user",
                password="secret",
            ),
            Database(
                alias="reporting",
                host="db2.internal",
                port=5433,
                dbname="reports",
                extra={"pool_size": "5", "pool_mode": "session"},
            ),
        ],
    )
