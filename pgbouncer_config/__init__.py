"""
pgbouncer-config

Typed model, INI codec, definition files, and drift detection for pgbouncer configuration.
"""

from .builder import PgBouncerConfigBuilder
from .config import (
    AuthType,
    Database,
    DatabasesSetting,
    PgBouncerConfig,
    PgBouncerSetting,
    PoolMode,
)
from .definition import (
    Definition,
    DefinitionFormat,
    default_definition,
    dumps_definition,
    load_definition,
    loads_definition,
    read_definition,
    render_definition,
    save_definition,
    write_definition,
)
from .diff import (
    ChangeStatus,
    ConfigDiff,
    DatabaseChange,
    ValueChange,
    diff_configs,
    diff_definition,
)
from .errors import (
    BuilderError,
    DefinitionFormatError,
    DiffInputError,
    DuplicateAliasError,
    ParseError,
    PgBouncerConfigError,
    ValidationError,
)
from .ini import load_ini, parse_ini, read_ini, render_ini, save_ini, write_ini

__all__ = [
    "AuthType",
    "BuilderError",
    "ChangeStatus",
    "ConfigDiff",
    "Database",
    "DatabaseChange",
    "DatabasesSetting",
    "Definition",
    "DefinitionFormat",
    "DefinitionFormatError",
    "DiffInputError",
    "DuplicateAliasError",
    "ParseError",
    "PgBouncerConfig",
    "PgBouncerConfigBuilder",
    "PgBouncerConfigError",
    "PgBouncerSetting",
    "PoolMode",
    "ValidationError",
    "ValueChange",
    "default_definition",
    "diff_configs",
    "diff_definition",
    "dumps_definition",
    "load_definition",
    "load_ini",
    "loads_definition",
    "parse_ini",
    "read_definition",
    "read_ini",
    "render_definition",
    "render_ini",
    "save_definition",
    "save_ini",
    "write_definition",
    "write_ini",
]
