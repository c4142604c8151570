from os import getenv
from typing import TypeVar

T = TypeVar("T")


def swap_env(obj: T) -> T:
    """
    Recursively walk a structure (dict / list / scalar) and replace every string that
    starts with `$` by the matching OS environment variable. This lets a definition file
    reference secrets like `password = "$REPORTING_DB_PASSWORD"` instead of storing them.

    A leading `$$` escapes the substitution and leaves a single literal `$`.

    """
    if isinstance(obj, dict):
        return {k: swap_env(v) for k, v in obj.items()}  # type: ignore

    if isinstance(obj, list):
        return [swap_env(item) for item in obj]  # type: ignore

    if isinstance(obj, str) and obj.startswith("$$"):
        return obj[1:]  # type: ignore

    if isinstance(obj, str) and obj.startswith("$"):
        env_name = obj[1:]
        env_val = getenv(env_name)
        if env_val is None:
            raise EnvironmentError(
                f"Environment variable '{env_name}' referenced in definition but not set."
            )
        return env_val  # type: ignore

    return obj
