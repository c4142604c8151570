class PgBouncerConfigError(Exception):
    """
    Base class for every error raised while modeling, parsing, building, or diffing
    a pgbouncer configuration.

    """


class ValidationError(PgBouncerConfigError, ValueError):
    """
    A field value violates its type or range constraint.

    """

    def __init__(self, field: str, constraint: str):
        self.field = field
        self.constraint = constraint
        super().__init__(f"Invalid value for '{field}': {constraint}")


class DuplicateAliasError(ValidationError):
    def __init__(self, alias: str):
        self.alias = alias
        super().__init__("databases", f"duplicate database alias '{alias}'")


class BuilderError(PgBouncerConfigError):
    """
    A configuration could not be assembled: a section is missing, was set twice,
    or two sections disagree with each other.

    """

    def __init__(self, message: str, section: str | None = None, alias: str | None = None):
        self.section = section
        self.alias = alias
        super().__init__(message)


class ParseError(PgBouncerConfigError):
    """
    Malformed INI text. Carries the line number, section, and offending token when known
    so the message can be shown to an operator as-is.

    """

    def __init__(
        self,
        message: str,
        line: int | None = None,
        section: str | None = None,
        token: str | None = None,
        alias: str | None = None,
    ):
        self.message = message
        self.line = line
        self.section = section
        self.token = token
        self.alias = alias
        super().__init__(self._format())

    def _format(self) -> str:
        context: list[str] = []
        if self.line is not None:
            context.append(f"line {self.line}")
        if self.section is not None:
            context.append(f"[{self.section}]")
        if self.token is not None:
            context.append(f"near {self.token!r}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class DefinitionFormatError(PgBouncerConfigError):
    """
    A structured definition is missing a required field or has the wrong shape.

    """

    def __init__(self, message: str, location: str | None = None):
        self.location = location
        super().__init__(f"{location}: {message}" if location else message)


class DiffInputError(PgBouncerConfigError):
    pass
