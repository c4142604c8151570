import re
from pathlib import Path
from typing import Any, BinaryIO, Iterable

from rich.markup import escape

from pgbouncer_config.builder import PgBouncerConfigBuilder
from pgbouncer_config.config import Database, DatabasesSetting, PgBouncerConfig, PgBouncerSetting
from pgbouncer_config.constants import (
    DATABASE_REQUIRED_ATTRS,
    PGBOUNCER_CORE_KEYS,
    PGBOUNCER_OPTIONAL_KEYS,
    SECTION_DATABASES,
    SECTION_PGBOUNCER,
)
from pgbouncer_config.errors import BuilderError, ParseError, ValidationError
from pgbouncer_config.logging import ERROR_CONSOLE

SECTION_RE = re.compile(r"^\[\s*(?P<name>[^\]]*?)\s*\]$")
KEY_VALUE_RE = re.compile(r"^(?P<key>[^=]+?)\s*=\s*(?P<value>.*)$")
CONNECTION_PARAM_RE = re.compile(
    r"(?P<key>[A-Za-z_][A-Za-z0-9_.]*)=(?P<value>'(?:[^'\\]|\\.)*'|[^\s;']+)"
)
UNESCAPE_RE = re.compile(r"\\(.)")

INTEGER_SETTINGS = {
    "listen_port",
    "max_client_conn",
    "default_pool_size",
    "server_check_delay",
    "server_idle_timeout",
    "server_lifetime",
    "server_connect_timeout",
    "server_login_retry",
    "client_login_timeout",
    "autodb_idle_timeout",
    "dns_max_ttl",
    "dns_nxdomain_ttl",
    "query_timeout",
    "query_wait_timeout",
    "cancel_wait_timeout",
    "client_idle_timeout",
    "idle_transaction_timeout",
    "suspend_timeout",
}
LIST_SETTINGS = {"admin_users", "stats_users", "ignore_startup_parameters"}


def is_comment(line: str) -> bool:
    return line.startswith("#") or line.startswith(";")


def is_param_separator(char: str) -> bool:
    return char.isspace() or char == ";"


def is_plain_integer(raw_value: str) -> bool:
    # Only ASCII digits; no sign, underscores or other Unicode digits
    return raw_value.isascii() and raw_value.isdigit()


class IniReader:
    """
    Line-oriented reader for pgbouncer.ini text. Settings are collected with the line they
    came from and only coerced into typed fields once the whole file has been read, so
    every error can point back at its source line.

    """

    def __init__(self) -> None:
        self.section: str | None = None
        self.seen_pgbouncer = False
        self.settings: dict[str, tuple[str, int]] = {}
        self.databases = DatabasesSetting()
        self.database_lines: dict[str, int] = {}

    def parse(self, text: str) -> PgBouncerConfig:
        for line_number, raw_line in enumerate(text.splitlines(), start=1):
            line = raw_line.strip()
            if not line or is_comment(line):
                continue

            section_match = SECTION_RE.match(line)
            if section_match:
                self.open_section(section_match.group("name"), line_number)
                continue

            key_value_match = KEY_VALUE_RE.match(line)
            if key_value_match is None:
                raise ParseError(
                    "Expected 'key = value'", line=line_number, section=self.section, token=line
                )
            key, value = key_value_match.group("key"), key_value_match.group("value")

            if self.section is None:
                raise ParseError(
                    "Setting found before any section header", line=line_number, token=key
                )
            elif self.section == SECTION_PGBOUNCER:
                self.read_setting(key, value, line_number)
            elif self.section == SECTION_DATABASES:
                self.read_database(key, value, line_number)
            # Anything else belongs to a section we skip

        return self.finish()

    def open_section(self, name: str, line_number: int) -> None:
        normalized = name.lower()
        if normalized == SECTION_PGBOUNCER:
            self.seen_pgbouncer = True
        elif normalized != SECTION_DATABASES:
            ERROR_CONSOLE.print(
                f"[yellow]Skipping unsupported section {escape(f'[{name}]')} "
                f"at line {line_number}[/yellow]"
            )
        self.section = normalized

    def read_setting(self, key: str, value: str, line_number: int) -> None:
        if key in self.settings:
            _, first_line = self.settings[key]
            raise ParseError(
                f"Duplicate setting '{key}' (first defined on line {first_line})",
                line=line_number,
                section=SECTION_PGBOUNCER,
                token=key,
            )
        self.settings[key] = (value, line_number)

    def read_database(self, alias: str, value: str, line_number: int) -> None:
        if alias in self.database_lines:
            raise ParseError(
                f"Duplicate database alias '{alias}' "
                f"(first defined on line {self.database_lines[alias]})",
                line=line_number,
                section=SECTION_DATABASES,
                token=alias,
                alias=alias,
            )
        self.database_lines[alias] = line_number
        self.databases.add(parse_database_entry(alias, value, line_number))

    def finish(self) -> PgBouncerConfig:
        if not self.seen_pgbouncer:
            raise ParseError("Missing [pgbouncer] section")

        setting = self.build_setting()
        try:
            return (
                PgBouncerConfigBuilder()
                .set_pgbouncer_setting(setting)
                .set_databases_setting(self.databases)
                .build()
            )
        except BuilderError as e:
            line = self.database_lines.get(e.alias) if e.alias else None
            raise ParseError(str(e), line=line, section=e.section, alias=e.alias) from e

    def build_setting(self) -> PgBouncerSetting:
        values: dict[str, Any] = {}
        passthrough: dict[str, str] = {}

        for key, (raw_value, line_number) in self.settings.items():
            if not PgBouncerSetting.is_recognized(key):
                passthrough[key] = raw_value
                continue

            if not raw_value:
                if key in PGBOUNCER_CORE_KEYS:
                    raise ParseError(
                        f"Setting '{key}' requires a value",
                        line=line_number,
                        section=SECTION_PGBOUNCER,
                        token=key,
                    )
                # pgbouncer treats an empty value as "not set"
                continue

            values[key] = coerce_setting(key, raw_value, line_number)

        try:
            return PgBouncerSetting(**values, passthrough=passthrough)
        except ValidationError as e:
            field = e.field.split(".")[0]
            raw_value, line_number = self.settings.get(field, (None, None))
            raise ParseError(
                str(e), line=line_number, section=SECTION_PGBOUNCER, token=raw_value
            ) from e


def coerce_setting(key: str, raw_value: str, line_number: int) -> Any:
    """
    Turn the raw text of a recognized [pgbouncer] key into the Python type its field
    expects. Range and enum checks are left to the model.

    """
    if key in INTEGER_SETTINGS:
        if not is_plain_integer(raw_value):
            raise ParseError(
                f"Setting '{key}' must be a non-negative integer",
                line=line_number,
                section=SECTION_PGBOUNCER,
                token=raw_value,
            )
        return int(raw_value)
    if key in LIST_SETTINGS:
        return [item.strip() for item in raw_value.split(",") if item.strip()]
    return raw_value


def parse_connection_params(alias: str, body: str, line_number: int) -> dict[str, str]:
    """
    Split a database entry like `host=db1 port=5432;dbname='my db'` into its parameters.

    """
    params: dict[str, str] = {}
    position = 0

    while True:
        while position < len(body) and is_param_separator(body[position]):
            position += 1
        if position >= len(body):
            break

        match = CONNECTION_PARAM_RE.match(body, position)
        end = match.end() if match else position
        if match is None or (end < len(body) and body[end] not in " \t;"):
            token = re.split(r"[\s;]", body[position:], maxsplit=1)[0]
            raise ParseError(
                f"Malformed connection parameter for database '{alias}'",
                line=line_number,
                section=SECTION_DATABASES,
                token=token,
                alias=alias,
            )

        key = match.group("key")
        if key in params:
            raise ParseError(
                f"Duplicate attribute '{key}' for database '{alias}'",
                line=line_number,
                section=SECTION_DATABASES,
                token=key,
                alias=alias,
            )
        params[key] = unquote_connection_value(match.group("value"))
        position = end

    return params


def parse_database_entry(alias: str, body: str, line_number: int) -> Database:
    params = parse_connection_params(alias, body, line_number)

    for attr in DATABASE_REQUIRED_ATTRS:
        if attr not in params:
            raise ParseError(
                f"Database '{alias}' is missing required attribute '{attr}'",
                line=line_number,
                section=SECTION_DATABASES,
                token=attr,
                alias=alias,
            )

    raw_port = params.pop("port")
    if not is_plain_integer(raw_port):
        raise ParseError(
            f"Database '{alias}' has a non-numeric port",
            line=line_number,
            section=SECTION_DATABASES,
            token=f"port={raw_port}",
            alias=alias,
        )

    try:
        return Database(
            alias=alias,
            host=params.pop("host"),
            port=int(raw_port),
            dbname=params.pop("dbname"),
            user=params.pop("user", None),
            password=params.pop("password", None),
            extra=params,
        )
    except ValidationError as e:
        raise ParseError(
            f"Invalid database '{alias}': {e}",
            line=line_number,
            section=SECTION_DATABASES,
            token=e.field,
            alias=alias,
        ) from e


def unquote_connection_value(value: str) -> str:
    if len(value) >= 2 and value.startswith("'") and value.endswith("'"):
        return UNESCAPE_RE.sub(r"\1", value[1:-1])
    return value


def quote_connection_value(value: str) -> str:
    if value and not any(char.isspace() or char in ";'\\" for char in value):
        return value
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def parse_ini(text: str) -> PgBouncerConfig:
    return IniReader().parse(text)


def read_ini(stream: BinaryIO) -> PgBouncerConfig:
    """
    Read a whole pgbouncer.ini byte stream and parse it.

    """
    data = stream.read()
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ParseError(f"Configuration is not valid UTF-8: {e}") from e
    return parse_ini(text)


def load_ini(path: Path | str) -> PgBouncerConfig:
    with open(path, "rb") as f:
        return read_ini(f)


def format_ini_value(value: int | str | list[str]) -> str:
    """
    Format a [pgbouncer] field value: name lists are comma-joined, enum members render
    as their plain value and pgbouncer doesn't want quotes around anything.

    """
    if isinstance(value, list):
        return ", ".join(value)
    return str(value)


def format_database_entry(database: Database, output_credentials: bool = True) -> str:
    params: list[tuple[str, str]] = [
        ("host", database.host),
        ("port", str(database.port)),
        ("dbname", database.dbname),
    ]
    if output_credentials:
        if database.user is not None:
            params.append(("user", database.user))
        if database.password is not None:
            params.append(("password", database.password))
    params.extend(database.extra.items())

    return " ".join(f"{key}={quote_connection_value(value)}" for key, value in params)


def pgbouncer_section_items(setting: PgBouncerSetting) -> dict[str, str]:
    """
    The [pgbouncer] lines in their canonical order: the core keys, then whichever optional
    keys are set, then the passthrough keys in the order they were added.

    """
    items = {key: format_ini_value(getattr(setting, key)) for key in PGBOUNCER_CORE_KEYS}

    for key in PGBOUNCER_OPTIONAL_KEYS:
        value = getattr(setting, key)
        if value is None or value == []:
            continue
        items[key] = format_ini_value(value)

    items.update(setting.passthrough)
    return items


def render_sections(
    sections: dict[str, dict[str, str]],
    section_comments: dict[str, str] | None = None,
) -> str:
    """
    Render already-formatted sections as INI text.

    Args:
        sections: Dictionary with sections as keys and key-value pairs as values
        section_comments: Optional comments to add before each section
    """
    lines: list[str] = []
    for section, items in sections.items():
        # Add optional comment for the section
        if section_comments and section in section_comments:
            lines.append(f"# {section_comments[section]}\n")

        lines.append(f"[{section}]\n")

        for key, value in items.items():
            lines.append(f"{key} = {value}".rstrip() + "\n")

        # Add a blank line between sections
        lines.append("\n")

    return "".join(lines)


def render_ini(
    config: PgBouncerConfig,
    output_credentials: bool = True,
    section_comments: dict[str, str] | None = None,
    exclude: Iterable[str] = (),
) -> str:
    """
    Render a config as pgbouncer.ini text. The output only depends on the config, so
    rendering the same config twice gives identical text.

    Args:
        config: The config to render
        output_credentials: When False, user and password are left out of every
            database entry even if the config has them
        section_comments: Optional comments to add before each section
        exclude: Database aliases to leave out of the [databases] section
    """
    excluded = set(exclude)
    sections = {
        SECTION_PGBOUNCER: pgbouncer_section_items(config.pgbouncer),
        SECTION_DATABASES: {
            alias: format_database_entry(database, output_credentials)
            for alias, database in config.databases.items()
            if alias not in excluded
        },
    }
    return render_sections(sections, section_comments)


def write_ini(
    config: PgBouncerConfig,
    stream: BinaryIO,
    output_credentials: bool = True,
    section_comments: dict[str, str] | None = None,
    exclude: Iterable[str] = (),
) -> None:
    text = render_ini(config, output_credentials, section_comments, exclude)
    stream.write(text.encode("utf-8"))


def save_ini(
    config: PgBouncerConfig,
    filepath: Path | str,
    output_credentials: bool = True,
    section_comments: dict[str, str] | None = None,
    exclude: Iterable[str] = (),
) -> None:
    """
    Write a config to a pgbouncer.ini file, creating parent directories as needed.

    """
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    with open(filepath, "wb") as f:
        write_ini(config, f, output_credentials, section_comments, exclude)
