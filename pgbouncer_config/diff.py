"""
Structural comparison between a deployed config and a desired one.

"""

from enum import StrEnum
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict

from pgbouncer_config.config import Database, PgBouncerConfig, PgBouncerSetting
from pgbouncer_config.constants import (
    DATABASE_CREDENTIAL_ATTRS,
    DATABASE_REQUIRED_ATTRS,
    PGBOUNCER_KEY_ORDER,
)
from pgbouncer_config.definition import Definition
from pgbouncer_config.errors import DiffInputError


class ChangeStatus(StrEnum):
    ADDED = "added"
    REMOVED = "removed"
    CHANGED = "changed"


class ValueChange(BaseModel):
    """
    How a single value differs: only in `desired` (added), only in `current` (removed), or
    present in both with different values (changed).

    """

    model_config = ConfigDict(frozen=True)

    status: ChangeStatus
    old: Any = None
    new: Any = None

    @classmethod
    def compare(cls, old: Any, new: Any) -> "ValueChange | None":
        if old == new:
            return None
        if old is None:
            return cls(status=ChangeStatus.ADDED, new=new)
        if new is None:
            return cls(status=ChangeStatus.REMOVED, old=old)
        return cls(status=ChangeStatus.CHANGED, old=old, new=new)

    def as_json(self) -> dict[str, Any]:
        if self.status == ChangeStatus.ADDED:
            return {"status": self.status.value, "value": self.new}
        if self.status == ChangeStatus.REMOVED:
            return {"status": self.status.value, "value": self.old}
        return {"old": self.old, "new": self.new}


class DatabaseChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: ChangeStatus

    # The whole entry for added/removed databases
    value: dict[str, Any] | None = None

    # Per-attribute breakdown for changed databases; extra params appear as `extra.<key>`
    changes: dict[str, ValueChange] = {}

    def as_json(self) -> dict[str, Any]:
        if self.status == ChangeStatus.CHANGED:
            return {
                "status": self.status.value,
                "changes": {key: change.as_json() for key, change in self.changes.items()},
            }
        return {"status": self.status.value, "value": self.value}


class ConfigDiff(BaseModel):
    model_config = ConfigDict(frozen=True)

    pgbouncer_changes: dict[str, ValueChange] = {}
    database_changes: dict[str, DatabaseChange] = {}

    @property
    def is_empty(self) -> bool:
        return not self.pgbouncer_changes and not self.database_changes

    def as_json(self) -> dict[str, Any]:
        return {
            "pgbouncer_changes": {
                key: change.as_json() for key, change in self.pgbouncer_changes.items()
            },
            "database_changes": {
                alias: change.as_json() for alias, change in self.database_changes.items()
            },
        }


def _comparable(value: Any) -> Any:
    # Unset optional keys and empty lists both render as "not in the file"
    if value is None or value == []:
        return None
    if isinstance(value, StrEnum):
        return value.value
    if isinstance(value, list):
        return list(value)
    return value


def diff_pgbouncer(current: PgBouncerSetting, desired: PgBouncerSetting) -> dict[str, ValueChange]:
    changes: dict[str, ValueChange] = {}

    for key in PGBOUNCER_KEY_ORDER:
        change = ValueChange.compare(
            _comparable(getattr(current, key)), _comparable(getattr(desired, key))
        )
        if change is not None:
            changes[key] = change

    for key in sorted(set(current.passthrough) | set(desired.passthrough)):
        change = ValueChange.compare(current.passthrough.get(key), desired.passthrough.get(key))
        if change is not None:
            changes[key] = change

    return changes


def diff_database(
    current: Database, desired: Database, compare_credentials: bool = True
) -> dict[str, ValueChange]:
    attributes = list(DATABASE_REQUIRED_ATTRS)
    if compare_credentials:
        attributes += DATABASE_CREDENTIAL_ATTRS

    changes: dict[str, ValueChange] = {}
    for attribute in attributes:
        change = ValueChange.compare(getattr(current, attribute), getattr(desired, attribute))
        if change is not None:
            changes[attribute] = change

    for key in sorted(set(current.extra) | set(desired.extra)):
        change = ValueChange.compare(current.extra.get(key), desired.extra.get(key))
        if change is not None:
            changes[f"extra.{key}"] = change

    return changes


def diff_configs(
    current: PgBouncerConfig,
    desired: PgBouncerConfig,
    ignore_databases: Iterable[str] = (),
    compare_credentials: bool = True,
) -> ConfigDiff:
    """
    Compare a deployed config with the desired one.

    Args:
        current: Usually parsed from the live pgbouncer.ini
        desired: Usually built from a definition file
        ignore_databases: Aliases that are left out of the comparison entirely
        compare_credentials: When False, user and password differences are not reported

    Returns:
        The changes needed to go from `current` to `desired`. Keys are ordered
        canonically, so the same pair of configs always gives the same report.
    """
    for name, config in (("current", current), ("desired", desired)):
        if not isinstance(config, PgBouncerConfig):
            raise DiffInputError(
                f"{name} must be a built PgBouncerConfig, got {type(config).__name__}"
            )

    ignored = set(ignore_databases)
    database_changes: dict[str, DatabaseChange] = {}

    aliases = (set(current.databases.aliases()) | set(desired.databases.aliases())) - ignored
    for alias in sorted(aliases):
        current_database = current.databases.get(alias)
        desired_database = desired.databases.get(alias)

        if current_database is not None and desired_database is not None:
            changes = diff_database(current_database, desired_database, compare_credentials)
            if changes:
                database_changes[alias] = DatabaseChange(
                    status=ChangeStatus.CHANGED, changes=changes
                )
        elif desired_database is not None:
            database_changes[alias] = DatabaseChange(
                status=ChangeStatus.ADDED,
                value=desired_database.as_dict(include_credentials=compare_credentials),
            )
        elif current_database is not None:
            database_changes[alias] = DatabaseChange(
                status=ChangeStatus.REMOVED,
                value=current_database.as_dict(include_credentials=compare_credentials),
            )

    return ConfigDiff(
        pgbouncer_changes=diff_pgbouncer(current.pgbouncer, desired.pgbouncer),
        database_changes=database_changes,
    )


def diff_definition(current: PgBouncerConfig, definition: Definition) -> ConfigDiff:
    """
    Compare a deployed config against a definition, applying the definition's ignore-list.
    When the definition keeps credentials out of pgbouncer.ini, the live file can't be
    expected to carry them, so user and password are not compared.

    """
    if not isinstance(definition, Definition):
        raise DiffInputError(f"definition must be a Definition, got {type(definition).__name__}")

    return diff_configs(
        current,
        definition.config,
        ignore_databases=definition.ignore_databases,
        compare_credentials=definition.output_credentials,
    )
