import re
from enum import StrEnum
from typing import Annotated, Any, Mapping, NoReturn, Self

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator
from pydantic import ValidationError as PydanticValidationError

from pgbouncer_config.constants import (
    DATABASE_RESERVED_ATTRS,
    MAX_CONNECTIONS,
    MAX_PORT,
    MAX_TIMEOUT_SECONDS,
    MIN_CONNECTIONS,
    MIN_PORT,
    PGBOUNCER_KEY_ORDER,
)
from pgbouncer_config.errors import DuplicateAliasError, PgBouncerConfigError, ValidationError


class AuthType(StrEnum):
    TRUST = "trust"
    PLAIN = "plain"
    MD5 = "md5"
    SCRAM_SHA_256 = "scram-sha-256"
    CERT = "cert"
    HBA = "hba"
    PAM = "pam"
    ANY = "any"


class PoolMode(StrEnum):
    SESSION = "session"
    """
    Server connection is released back to the pool when the client disconnects
    """

    TRANSACTION = "transaction"
    """
    Server connection is released back to the pool after each transaction
    """

    STATEMENT = "statement"
    """
    Server connection is released back to the pool after each query; multi-statement
    transactions are disallowed
    """


Port = Annotated[int, Field(strict=True, ge=MIN_PORT, le=MAX_PORT)]
ConnectionCount = Annotated[int, Field(strict=True, ge=MIN_CONNECTIONS, le=MAX_CONNECTIONS)]
TimeoutSeconds = Annotated[int, Field(strict=True, ge=0, le=MAX_TIMEOUT_SECONDS)]
PathSetting = Annotated[str, Field(min_length=1)]

ALIAS_PATTERN = r"^[^\s=;#\[\]\x00]+$"
EXTRA_KEY_PATTERN = r"^[A-Za-z_][A-Za-z0-9_.]*$"
PASSTHROUGH_KEY_PATTERN = r"^[^\s=;#\[\]\x00]+$"

# NUL plus every boundary str.splitlines() breaks on; any of them would end or corrupt
# an INI line
LINE_BREAKING_CHARACTERS = frozenset("\0\n\r\x0b\x0c\x1c\x1d\x1e\x85\u2028\u2029")


def check_ini_text(value: str, allow_padding: bool = False) -> str:
    """
    Reject text that can't be written on a single pgbouncer.ini line and read back as the
    same value. Unquoted values lose surrounding whitespace when read, so padding is only
    allowed where the writer quotes it.

    """
    if any(char in value for char in LINE_BREAKING_CHARACTERS):
        raise ValueError("must not contain line breaks or NUL characters")
    if not allow_padding and value != value.strip():
        raise ValueError("must not have leading or trailing whitespace")
    return value


def _refuse_change(self: Any, *args: Any, **kwargs: Any) -> NoReturn:
    raise TypeError("belongs to a built config; derive a new config to change it")


class FrozenList(list[Any]):
    """
    Read-only list held by a locked section. Copies (shallow or deep) are plain lists
    again, which is what unlocked copies of a section rely on.

    """

    append = extend = insert = remove = pop = clear = sort = reverse = _refuse_change
    __setitem__ = __delitem__ = __iadd__ = __imul__ = _refuse_change

    def __reduce__(self) -> tuple[Any, ...]:
        return (list, (list(self),))


class FrozenDict(dict[str, Any]):
    """
    Read-only dict held by a locked section; copies are plain dicts.

    """

    update = setdefault = pop = popitem = clear = _refuse_change
    __setitem__ = __delitem__ = __ior__ = _refuse_change

    def __reduce__(self) -> tuple[Any, ...]:
        return (dict, (dict(self),))


def translate_validation_error(error: PydanticValidationError) -> PgBouncerConfigError:
    """
    Convert a pydantic validation failure into our own error hierarchy. Errors that our
    validators raised on purpose are unwrapped and returned as-is; everything else is
    reported against the first failing field.

    """
    first = error.errors()[0]
    original = first.get("ctx", {}).get("error")
    if isinstance(original, PgBouncerConfigError):
        return original

    field = ".".join(str(part) for part in first["loc"]) or error.title
    return ValidationError(field, first["msg"])


class SectionModel(BaseModel):
    """
    Base for every mutable configuration section. Assignments are validated before they
    are applied, so a rejected value leaves the previous one in place. Once a section is
    owned by a built PgBouncerConfig it is locked and refuses further changes.

    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    _locked: bool = PrivateAttr(default=False)

    def __init__(self, **data: Any):
        try:
            super().__init__(**data)
        except PydanticValidationError as e:
            raise translate_validation_error(e) from e

    def __setattr__(self, name: str, value: Any) -> None:
        if not name.startswith("_"):
            self._ensure_unlocked(name)
        try:
            super().__setattr__(name, value)
        except PydanticValidationError as e:
            raise translate_validation_error(e) from e

    def __eq__(self, other: object) -> bool:
        # Lock state is not part of the value
        if type(self) is not type(other):
            return NotImplemented
        return self.__dict__ == other.__dict__

    @property
    def locked(self) -> bool:
        return self._locked

    def lock(self) -> None:
        # Containers are swapped for read-only ones so in-place edits fail too
        for name in type(self).model_fields:
            value = self.__dict__[name]
            if isinstance(value, list):
                self.__dict__[name] = FrozenList(value)
            elif isinstance(value, dict):
                self.__dict__[name] = FrozenDict(value)
        self._locked = True

    def unlocked_copy(self) -> Self:
        """
        Deep copy of this section that can be modified again, even if this one is locked.

        """
        copy = self.model_copy(deep=True)
        copy._unlock()
        return copy

    def _unlock(self) -> None:
        for name in type(self).model_fields:
            value = self.__dict__[name]
            if isinstance(value, FrozenList):
                self.__dict__[name] = list(value)
            elif isinstance(value, FrozenDict):
                self.__dict__[name] = dict(value)
        self._locked = False

    def _ensure_unlocked(self, field: str) -> None:
        if self._locked:
            raise ValidationError(
                field, "section belongs to a built config; derive a new config to change it"
            )


class PgBouncerSetting(SectionModel):
    """
    The [pgbouncer] section. Recognized keys are typed fields with pgbouncer's own
    defaults; anything else found in an existing file lives in `passthrough` so it can be
    written back untouched.

    """

    listen_addr: str = Field(default="127.0.0.1", min_length=1)
    listen_port: Port = 6432

    auth_type: AuthType = AuthType.MD5
    pool_mode: PoolMode = PoolMode.SESSION

    max_client_conn: ConnectionCount = 100
    default_pool_size: ConnectionCount = 20

    admin_users: list[str] = []
    stats_users: list[str] = []
    ignore_startup_parameters: list[str] = []

    logfile: PathSetting | None = None
    pidfile: PathSetting | None = None
    auth_file: PathSetting | None = None
    unix_socket_dir: PathSetting | None = None
    auth_hba_file: PathSetting | None = None
    auth_ident_file: PathSetting | None = None
    resolve_conf: PathSetting | None = None

    # All timeouts are in seconds; pgbouncer treats 0 as "disabled" for most of them
    server_check_delay: TimeoutSeconds | None = None
    server_idle_timeout: TimeoutSeconds | None = None
    server_lifetime: TimeoutSeconds | None = None
    server_connect_timeout: TimeoutSeconds | None = None
    server_login_retry: TimeoutSeconds | None = None
    client_login_timeout: TimeoutSeconds | None = None
    autodb_idle_timeout: TimeoutSeconds | None = None
    dns_max_ttl: TimeoutSeconds | None = None
    dns_nxdomain_ttl: TimeoutSeconds | None = None
    query_timeout: TimeoutSeconds | None = None
    query_wait_timeout: TimeoutSeconds | None = None
    cancel_wait_timeout: TimeoutSeconds | None = None
    client_idle_timeout: TimeoutSeconds | None = None
    idle_transaction_timeout: TimeoutSeconds | None = None
    suspend_timeout: TimeoutSeconds | None = None

    passthrough: dict[str, str] = {}

    @classmethod
    def recognized_keys(cls) -> list[str]:
        return list(PGBOUNCER_KEY_ORDER)

    @classmethod
    def is_recognized(cls, key: str) -> bool:
        return key in PGBOUNCER_KEY_ORDER

    @field_validator("auth_type", "pool_mode", mode="before")
    @classmethod
    def normalize_enum_case(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("admin_users", "stats_users", "ignore_startup_parameters")
    @classmethod
    def validate_name_list(cls, value: list[str]) -> list[str]:
        for item in value:
            if not item or item != item.strip() or "," in item:
                raise ValueError(
                    f"'{item}' must be a non-empty name without commas or surrounding whitespace"
                )
            check_ini_text(item)
        return value

    @field_validator(
        "listen_addr",
        "logfile",
        "pidfile",
        "auth_file",
        "unix_socket_dir",
        "auth_hba_file",
        "auth_ident_file",
        "resolve_conf",
    )
    @classmethod
    def validate_single_line(cls, value: str | None) -> str | None:
        if value is not None:
            check_ini_text(value)
        return value

    @field_validator("passthrough")
    @classmethod
    def validate_passthrough(cls, value: dict[str, str]) -> dict[str, str]:
        for key, item in value.items():
            _check_passthrough_key(key)
            _check_passthrough_value(key, item)
        return value

    def get_passthrough(self, key: str) -> str | None:
        return self.passthrough.get(key)

    def set_passthrough(self, key: str, value: str) -> None:
        """
        Store a raw key/value pair that has no typed field. The value is kept verbatim, so
        it must already be a single line without surrounding whitespace.

        """
        self._ensure_unlocked("passthrough")
        _check_passthrough_key(key)
        _check_passthrough_value(key, value)
        self.passthrough[key] = value

    def remove_passthrough(self, key: str) -> None:
        self._ensure_unlocked("passthrough")
        self.passthrough.pop(key, None)

    def add_admin_user(self, user: str) -> None:
        if user not in self.admin_users:
            self.admin_users = [*self.admin_users, user]

    def add_stats_user(self, user: str) -> None:
        if user not in self.stats_users:
            self.stats_users = [*self.stats_users, user]

    def add_ignore_startup_parameter(self, parameter: str) -> None:
        if parameter not in self.ignore_startup_parameters:
            self.ignore_startup_parameters = [*self.ignore_startup_parameters, parameter]

    def as_dict(self) -> dict[str, Any]:
        """
        Plain values in canonical key order, leaving out unset optional keys. Passthrough
        keys follow under `passthrough` when there are any.

        """
        payload: dict[str, Any] = {}
        for key in PGBOUNCER_KEY_ORDER:
            value = getattr(self, key)
            if value is None:
                continue
            if isinstance(value, StrEnum):
                value = value.value
            elif isinstance(value, list):
                value = list(value)
            payload[key] = value
        if self.passthrough:
            payload["passthrough"] = dict(self.passthrough)
        return payload


def _check_passthrough_key(key: str) -> None:
    if PgBouncerSetting.is_recognized(key) or key == "passthrough":
        raise ValidationError(key, "is a recognized setting; assign the typed field instead")
    if not re.fullmatch(PASSTHROUGH_KEY_PATTERN, key):
        raise ValidationError(
            "passthrough",
            f"key '{key}' must be non-empty without spaces, '=', ';', '#' or brackets",
        )


def _check_passthrough_value(key: str, value: str) -> None:
    try:
        check_ini_text(value)
    except ValueError as e:
        raise ValidationError(f"passthrough.{key}", str(e)) from e


class Database(SectionModel):
    """
    One pool target in the [databases] section. `user` and `password` are None when the
    entry does not set them, meaning pgbouncer falls back to the client's credentials.

    """

    alias: str = Field(pattern=ALIAS_PATTERN)
    host: str = Field(min_length=1)
    port: Port
    dbname: str = Field(min_length=1)
    user: str | None = None
    password: str | None = None

    # Any other connection parameter (pool_size, pool_mode, connect_query, ...)
    extra: dict[str, str] = {}

    @field_validator("host", "dbname", "user")
    @classmethod
    def validate_single_line(cls, value: str | None) -> str | None:
        if value is not None:
            check_ini_text(value)
        return value

    @field_validator("password")
    @classmethod
    def validate_password(cls, value: str | None) -> str | None:
        # Written quoted, so surrounding whitespace survives
        if value is not None:
            check_ini_text(value, allow_padding=True)
        return value

    @field_validator("extra")
    @classmethod
    def validate_extra(cls, value: dict[str, str]) -> dict[str, str]:
        for key, item in value.items():
            if key in DATABASE_RESERVED_ATTRS:
                raise ValidationError(f"extra.{key}", f"'{key}' has a dedicated field")
            if not re.fullmatch(EXTRA_KEY_PATTERN, key):
                raise ValidationError(f"extra.{key}", "must be an identifier")
            try:
                check_ini_text(item)
            except ValueError as e:
                raise ValidationError(f"extra.{key}", str(e)) from e
        return value

    def set_extra(self, key: str, value: str) -> None:
        self.extra = {**self.extra, key: value}

    def remove_extra(self, key: str) -> None:
        self.extra = {k: v for k, v in self.extra.items() if k != key}

    def as_dict(self, include_credentials: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "alias": self.alias,
            "host": self.host,
            "port": self.port,
            "dbname": self.dbname,
        }
        if include_credentials:
            if self.user is not None:
                payload["user"] = self.user
            if self.password is not None:
                payload["password"] = self.password
        if self.extra:
            payload["extra"] = dict(self.extra)
        return payload


class DatabasesSetting(SectionModel):
    """
    The [databases] section: database entries keyed by alias, in insertion order.

    """

    databases: list[Database] = []

    @field_validator("databases")
    @classmethod
    def validate_unique_aliases(cls, value: list[Database]) -> list[Database]:
        seen: set[str] = set()
        for database in value:
            if database.alias in seen:
                raise DuplicateAliasError(database.alias)
            seen.add(database.alias)
        return value

    def __len__(self) -> int:
        return len(self.databases)

    def __contains__(self, alias: object) -> bool:
        return any(database.alias == alias for database in self.databases)

    def __getitem__(self, alias: str) -> Database:
        database = self.get(alias)
        if database is None:
            raise KeyError(alias)
        return database

    def get(self, alias: str) -> Database | None:
        for database in self.databases:
            if database.alias == alias:
                return database
        return None

    def aliases(self) -> list[str]:
        return [database.alias for database in self.databases]

    def items(self) -> list[tuple[str, Database]]:
        return [(database.alias, database) for database in self.databases]

    def add(self, database: Database) -> None:
        self._ensure_unlocked("databases")
        if database.alias in self:
            raise DuplicateAliasError(database.alias)
        self.databases.append(database)

    def remove(self, alias: str) -> Database:
        self._ensure_unlocked("databases")
        database = self[alias]
        self.databases.remove(database)
        return database

    def merge(self, databases: Mapping[str, Database]) -> None:
        """
        Add every entry of an alias -> Database mapping, such as the result of an import.
        Nothing is added if any alias is already present or the mapping disagrees with
        the entry's own alias.

        """
        self._ensure_unlocked("databases")
        for alias, database in databases.items():
            if alias != database.alias:
                raise ValidationError(
                    "databases", f"mapping key '{alias}' does not match alias '{database.alias}'"
                )
            if alias in self:
                raise DuplicateAliasError(alias)
        self.databases.extend(databases.values())

    def lock(self) -> None:
        super().lock()
        for database in self.databases:
            database.lock()

    def _unlock(self) -> None:
        super()._unlock()
        for database in self.databases:
            database._unlock()


class PgBouncerConfig(BaseModel):
    """
    A complete, validated pgbouncer configuration. Instances come out of
    PgBouncerConfigBuilder.build(), hold their own locked copies of both sections, and are
    never modified afterwards.

    """

    model_config = ConfigDict(frozen=True)

    pgbouncer: PgBouncerSetting
    databases: DatabasesSetting
