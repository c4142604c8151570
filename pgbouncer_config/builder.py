from typing import Self

from pgbouncer_config.config import (
    AuthType,
    Database,
    DatabasesSetting,
    PgBouncerConfig,
    PgBouncerSetting,
    PoolMode,
)
from pgbouncer_config.constants import (
    DATABASE_INTEGER_OVERRIDES,
    LOOPBACK_HOSTS,
    SECTION_DATABASES,
    SECTION_PGBOUNCER,
    WILDCARD_LISTEN_ADDRS,
)
from pgbouncer_config.errors import BuilderError


class PgBouncerConfigBuilder:
    """
    Collects the two sections of a pgbouncer configuration and checks them against each
    other before handing out an immutable PgBouncerConfig. Each section can be set once;
    use the replace_* methods to swap a section that has already been set.

    """

    def __init__(self) -> None:
        self._pgbouncer: PgBouncerSetting | None = None
        self._databases: DatabasesSetting | None = None

    @classmethod
    def from_config(cls, config: PgBouncerConfig) -> "PgBouncerConfigBuilder":
        """
        Seed a builder with editable copies of an existing config's sections, so a changed
        config can be derived without touching the original.

        """
        builder = cls()
        builder.set_pgbouncer_setting(config.pgbouncer.unlocked_copy())
        builder.set_databases_setting(config.databases.unlocked_copy())
        return builder

    @property
    def pgbouncer_setting(self) -> PgBouncerSetting | None:
        return self._pgbouncer

    @property
    def databases_setting(self) -> DatabasesSetting | None:
        return self._databases

    def set_pgbouncer_setting(self, setting: PgBouncerSetting) -> Self:
        if self._pgbouncer is not None:
            raise BuilderError(
                "The [pgbouncer] section has already been set", section=SECTION_PGBOUNCER
            )
        self._pgbouncer = setting
        return self

    def set_databases_setting(self, setting: DatabasesSetting) -> Self:
        if self._databases is not None:
            raise BuilderError(
                "The [databases] section has already been set", section=SECTION_DATABASES
            )
        self._databases = setting
        return self

    def replace_pgbouncer_setting(self, setting: PgBouncerSetting) -> Self:
        if self._pgbouncer is None:
            raise BuilderError(
                "Cannot replace the [pgbouncer] section before it has been set",
                section=SECTION_PGBOUNCER,
            )
        self._pgbouncer = setting
        return self

    def replace_databases_setting(self, setting: DatabasesSetting) -> Self:
        if self._databases is None:
            raise BuilderError(
                "Cannot replace the [databases] section before it has been set",
                section=SECTION_DATABASES,
            )
        self._databases = setting
        return self

    def build(self) -> PgBouncerConfig:
        if self._pgbouncer is None:
            raise BuilderError("Missing [pgbouncer] section", section=SECTION_PGBOUNCER)
        if self._databases is None:
            raise BuilderError("Missing [databases] section", section=SECTION_DATABASES)

        # The built config owns private copies; later changes to the builder's
        # sections never reach it
        pgbouncer = self._pgbouncer.unlocked_copy()
        databases = self._databases.unlocked_copy()

        validate_pgbouncer_setting(pgbouncer)
        for database in databases.databases:
            validate_database(pgbouncer, database)

        pgbouncer.lock()
        databases.lock()
        return PgBouncerConfig(pgbouncer=pgbouncer, databases=databases)


def validate_pgbouncer_setting(setting: PgBouncerSetting) -> None:
    """
    Checks that involve more than one [pgbouncer] key. These can't live on the model
    itself because assignments happen one field at a time.

    """
    if setting.auth_type == AuthType.HBA and setting.auth_hba_file is None:
        raise BuilderError("auth_type = hba requires auth_hba_file", section=SECTION_PGBOUNCER)


def validate_database(setting: PgBouncerSetting, database: Database) -> None:
    if points_at_listener(setting, database):
        raise BuilderError(
            f"Database '{database.alias}' points at pgbouncer's own listener "
            f"({database.host}:{database.port})",
            section=SECTION_DATABASES,
            alias=database.alias,
        )

    pool_mode = database.extra.get("pool_mode")
    if pool_mode is not None and pool_mode.lower() not in {mode.value for mode in PoolMode}:
        raise BuilderError(
            f"Database '{database.alias}' has an invalid pool_mode '{pool_mode}'",
            section=SECTION_DATABASES,
            alias=database.alias,
        )

    for key in DATABASE_INTEGER_OVERRIDES:
        raw_value = database.extra.get(key)
        if raw_value is None:
            continue
        if not raw_value.isdigit():
            raise BuilderError(
                f"Database '{database.alias}' has a non-numeric {key} '{raw_value}'",
                section=SECTION_DATABASES,
                alias=database.alias,
            )


def points_at_listener(setting: PgBouncerSetting, database: Database) -> bool:
    """
    Whether a database entry would route connections back into pgbouncer itself.

    """
    if database.port != setting.listen_port:
        return False

    if setting.unix_socket_dir is not None and database.host == setting.unix_socket_dir:
        return True

    listen_addrs = {addr.strip() for addr in setting.listen_addr.split(",")}
    if database.host in listen_addrs:
        return True
    local_listener = bool(listen_addrs & (WILDCARD_LISTEN_ADDRS | LOOPBACK_HOSTS))
    return local_listener and database.host in LOOPBACK_HOSTS
