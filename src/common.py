"""Common error types shared by the parser, planner and executor."""

from typing import Optional


class TemplateError(Exception):
    """Base class for all template processing errors."""


class ParseError(TemplateError):
    """Malformed document or expression.

    Attributes:
        location: Document path of the offending construct (e.g. 'resources.web.type')
        line: 1-based line number when known (YAML syntax errors)
        column: 1-based column number when known
    """

    def __init__(self, message: str, location: str = '', line: Optional[int] = None,
                 column: Optional[int] = None):
        self.message = message
        self.location = location
        self.line = line
        self.column = column
        where = location
        if line is not None:
            where = f"{where} " if where else ''
            where += f"(line {line}, column {column})"
        super().__init__(f"{where}: {message}" if where else message)


class ParameterError(TemplateError):
    """Base class for parameter resolution errors."""

    def __init__(self, name: str, message: str):
        self.name = name
        super().__init__(f"Parameter '{name}': {message}")


class MissingParameterError(ParameterError):
    """Required parameter has neither an override nor a default."""

    def __init__(self, name: str):
        super().__init__(name, "no value supplied and no default declared")


class InvalidParameterError(ParameterError):
    """Parameter value violates its declared type or constraints."""


class UnresolvedReferenceError(TemplateError):
    """Reference to a resource, parameter or attribute that does not exist."""

    def __init__(self, source: str, reference: str, detail: str = ''):
        self.source = source
        self.reference = reference
        message = f"'{source}' references unknown '{reference}'"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class CycleError(TemplateError):
    """Dependency graph contains a cycle.

    Attributes:
        cycle: Participating names in order, first element repeated at the end
    """

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")

    @property
    def members(self) -> list[str]:
        """Distinct participants, in cycle order."""
        return self.cycle[:-1] if len(self.cycle) > 1 else list(self.cycle)


class EvaluationError(TemplateError):
    """Expression could not be evaluated (bad arguments, wrong value class)."""


class ProviderError(TemplateError):
    """External materialization failed.

    Attributes:
        resource: Name of the resource being materialized
        status_code: HTTP status when the provider is remote
    """

    def __init__(self, message: str, resource: str = '', status_code: Optional[int] = None):
        self.resource = resource
        self.status_code = status_code
        super().__init__(f"{resource}: {message}" if resource else message)
