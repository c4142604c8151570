"""
Desired-state definition files.

A definition is what an operator keeps under version control: the full pgbouncer config
plus intent that never shows up in pgbouncer.ini itself (databases to ignore, whether
credentials are written out). It is stored as TOML or JSON with this shape:

    [pgbouncer]             recognized settings, plus an optional `passthrough` table
    [[databases]]           alias, host, port, dbname, user?, password?, extra?
    ignore_databases        list of aliases
    output_credentials      bool
    allow_not_exist         bool

Unknown top-level keys are carried along untouched.

"""

import json
import tomllib
from enum import StrEnum
from pathlib import Path
from typing import Any, BinaryIO, Mapping

import tomli_w
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from pgbouncer_config.builder import PgBouncerConfigBuilder
from pgbouncer_config.config import (
    Database,
    DatabasesSetting,
    PgBouncerConfig,
    PgBouncerSetting,
    SectionModel,
    translate_validation_error,
)
from pgbouncer_config.env import swap_env
from pgbouncer_config.errors import BuilderError, DefinitionFormatError, ValidationError
from pgbouncer_config.ini import render_ini

KNOWN_KEYS = ["pgbouncer", "databases", "ignore_databases", "output_credentials", "allow_not_exist"]
REQUIRED_KEYS = ["pgbouncer", "databases"]


class DefinitionFormat(StrEnum):
    TOML = "toml"
    JSON = "json"

    @classmethod
    def from_path(cls, path: Path | str) -> "DefinitionFormat":
        return cls.JSON if Path(path).suffix.lower() == ".json" else cls.TOML


class Definition(BaseModel):
    """
    A built config together with the operator intent that is not part of pgbouncer.ini.

    """

    model_config = ConfigDict(frozen=True)

    config: PgBouncerConfig

    # Aliases left out of the rendered pgbouncer.ini, diffs and imports
    ignore_databases: list[str] = []

    # When False, user/password are kept out of the generated pgbouncer.ini so they can
    # be supplied by an external secret store (auth_file, auth_query)
    output_credentials: bool = False

    # When True, ignore_databases may name databases the definition doesn't declare,
    # and a missing definition file is treated as an empty one
    allow_not_exist: bool = False

    passthrough: dict[str, Any] = {}

    def with_config(self, config: PgBouncerConfig) -> "Definition":
        return self.model_copy(update={"config": config})

    def with_ignored_database(self, alias: str) -> "Definition":
        if alias in self.ignore_databases:
            return self
        definition = self.model_copy(update={"ignore_databases": [*self.ignore_databases, alias]})
        check_ignore_list(definition)
        return definition


def default_definition(with_placeholder: bool = False) -> Definition:
    """
    A definition with pgbouncer's default settings. The placeholder database is a template
    for operators to edit; its password is read from the environment at generate time.

    """
    databases = DatabasesSetting()
    if with_placeholder:
        databases.add(
            Database(
                alias="postgres",
                host="127.0.0.1",
                port=5432,
                dbname="postgres",
                user="postgres",
                password="$POSTGRES_PASSWORD",
            )
        )

    config = (
        PgBouncerConfigBuilder()
        .set_pgbouncer_setting(PgBouncerSetting())
        .set_databases_setting(databases)
        .build()
    )
    return Definition(config=config)


def check_ignore_list(definition: Definition) -> None:
    if definition.allow_not_exist:
        return
    for alias in definition.ignore_databases:
        if alias not in definition.config.databases:
            raise DefinitionFormatError(
                f"'{alias}' is not a declared database; set allow_not_exist to ignore it anyway",
                location="ignore_databases",
            )


def definition_to_dict(definition: Definition) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "pgbouncer": definition.config.pgbouncer.as_dict(),
        "databases": [database.as_dict() for _, database in definition.config.databases.items()],
        "ignore_databases": list(definition.ignore_databases),
        "output_credentials": definition.output_credentials,
        "allow_not_exist": definition.allow_not_exist,
    }
    for key, value in definition.passthrough.items():
        payload[key] = value
    return payload


def _validate_section(model: type[SectionModel], data: Any, location: str) -> Any:
    if not isinstance(data, Mapping):
        raise DefinitionFormatError("expected an object", location=location)
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        error = translate_validation_error(e)
        raise DefinitionFormatError(str(error), location=location) from e


def _expect_bool(tree: Mapping[str, Any], key: str) -> bool:
    value = tree.get(key, False)
    if not isinstance(value, bool):
        raise DefinitionFormatError("expected a boolean", location=key)
    return value


def definition_from_dict(tree: Any) -> Definition:
    """
    Decode a parsed TOML/JSON tree. Known keys are checked strictly; unknown top-level
    keys are kept in the definition's passthrough bucket.

    """
    if not isinstance(tree, Mapping):
        raise DefinitionFormatError("a definition must be an object")
    for key in REQUIRED_KEYS:
        if key not in tree:
            raise DefinitionFormatError("required key is missing", location=key)

    pgbouncer = _validate_section(PgBouncerSetting, tree["pgbouncer"], "pgbouncer")

    raw_databases = tree["databases"]
    if not isinstance(raw_databases, list):
        raise DefinitionFormatError("expected an array of objects", location="databases")
    databases = DatabasesSetting()
    for index, raw_database in enumerate(raw_databases):
        database = _validate_section(Database, raw_database, f"databases[{index}]")
        try:
            databases.add(database)
        except ValidationError as e:
            raise DefinitionFormatError(str(e), location=f"databases[{index}]") from e

    ignore_databases = tree.get("ignore_databases", [])
    if not isinstance(ignore_databases, list) or not all(
        isinstance(alias, str) for alias in ignore_databases
    ):
        raise DefinitionFormatError("expected an array of strings", location="ignore_databases")

    try:
        config = (
            PgBouncerConfigBuilder()
            .set_pgbouncer_setting(pgbouncer)
            .set_databases_setting(databases)
            .build()
        )
    except BuilderError as e:
        raise DefinitionFormatError(str(e), location=e.section) from e

    definition = Definition(
        config=config,
        ignore_databases=list(ignore_databases),
        output_credentials=_expect_bool(tree, "output_credentials"),
        allow_not_exist=_expect_bool(tree, "allow_not_exist"),
        passthrough={key: value for key, value in tree.items() if key not in KNOWN_KEYS},
    )
    check_ignore_list(definition)
    return definition


def dumps_definition(definition: Definition, fmt: DefinitionFormat = DefinitionFormat.TOML) -> str:
    payload = definition_to_dict(definition)
    if fmt == DefinitionFormat.JSON:
        return json.dumps(payload, indent=2) + "\n"
    return tomli_w.dumps(payload)


def parse_tree(text: str, fmt: DefinitionFormat = DefinitionFormat.TOML) -> Any:
    try:
        if fmt == DefinitionFormat.JSON:
            return json.loads(text)
        return tomllib.loads(text)
    except (tomllib.TOMLDecodeError, json.JSONDecodeError) as e:
        raise DefinitionFormatError(f"Error parsing {fmt.value.upper()}: {e}") from e


def loads_definition(
    text: str,
    fmt: DefinitionFormat = DefinitionFormat.TOML,
    resolve_env: bool = False,
) -> Definition:
    tree = parse_tree(text, fmt)
    if resolve_env:
        tree = swap_env(tree)
    return definition_from_dict(tree)


def read_definition(
    stream: BinaryIO,
    fmt: DefinitionFormat = DefinitionFormat.TOML,
    resolve_env: bool = False,
) -> Definition:
    """
    Read a whole definition from a byte stream.

    Args:
        stream: Binary stream holding UTF-8 TOML or JSON
        fmt: Which of the two formats the stream holds
        resolve_env: Replace `$NAME` strings by the NAME environment variable
    """
    try:
        text = stream.read().decode("utf-8")
    except UnicodeDecodeError as e:
        raise DefinitionFormatError(f"Definition is not valid UTF-8: {e}") from e

    return loads_definition(text, fmt, resolve_env=resolve_env)


def write_definition(
    definition: Definition,
    stream: BinaryIO,
    fmt: DefinitionFormat = DefinitionFormat.TOML,
) -> None:
    stream.write(dumps_definition(definition, fmt).encode("utf-8"))


def load_definition(
    path: Path | str,
    allow_not_exist: bool = False,
    resolve_env: bool = False,
) -> Definition:
    """
    Load a definition file, picking TOML or JSON from its suffix.

    Args:
        path: Path to the definition file
        allow_not_exist: Return a default definition instead of failing when the file
            does not exist
        resolve_env: Replace `$NAME` strings by the NAME environment variable; leave this
            off when the definition will be written back, so secrets stay out of the file
    """
    path = Path(path)
    if not path.exists():
        if allow_not_exist:
            return default_definition()
        raise FileNotFoundError(f"Definition file not found at {path}")

    with open(path, "rb") as f:
        return read_definition(f, DefinitionFormat.from_path(path), resolve_env=resolve_env)


def save_definition(definition: Definition, path: Path | str) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        write_definition(definition, f, DefinitionFormat.from_path(path))


def render_definition(
    definition: Definition, section_comments: dict[str, str] | None = None
) -> str:
    """
    Render a definition's config as pgbouncer.ini text, honoring its credential toggle.
    Ignored databases are managed outside the definition and are left out.

    """
    return render_ini(
        definition.config,
        output_credentials=definition.output_credentials,
        section_comments=section_comments,
        exclude=definition.ignore_databases,
    )
