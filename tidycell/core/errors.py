"""
Error taxonomy for tidy verbs.

Every verb-level failure names the offending identifier, both in the message
and as an attribute, so callers can pick a different column or feature and
call again. Nothing here is retried.
"""


class TidyCellError(Exception):
    """Base class for all tidycell errors"""


class ColumnNotFound(TidyCellError, KeyError):
    """A verb referenced a column that is not defined on the dataset"""

    def __init__(self, column: str, available: list[str] | None = None):
        self.column = column
        self.available = list(available) if available is not None else []
        message = f"Column '{column}' not found"
        if self.available:
            shown = ", ".join(self.available[:10])
            more = "..." if len(self.available) > 10 else ""
            message += f" (available: {shown}{more})"
        super().__init__(message)

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return self.args[0]


class AssayNotFound(TidyCellError, KeyError):
    """The requested assay is not part of the columnar store"""

    def __init__(self, assay: str, available: list[str] | None = None):
        self.assay = assay
        self.available = list(available) if available is not None else []
        message = f"Assay '{assay}' not found"
        if self.available:
            message += f" (available: {', '.join(self.available)})"
        super().__init__(message)

    def __str__(self) -> str:
        return self.args[0]


class FeatureNotFound(TidyCellError, KeyError):
    """One or more feature ids are missing from the feature axis"""

    def __init__(self, features: list[str]):
        self.features = list(features)
        super().__init__(f"Feature(s) not found: {', '.join(self.features)}")

    def __str__(self) -> str:
        return self.args[0]


class DuplicateFeature(TidyCellError, ValueError):
    """Feature ids were repeated where they must be unique"""

    def __init__(self, features: list[str]):
        self.features = list(features)
        super().__init__(f"Duplicate feature id(s): {', '.join(self.features)}")


class DuplicateCellId(TidyCellError, ValueError):
    """Cell ids were repeated where they must be unique"""

    def __init__(self, cell_ids: list[str]):
        self.cell_ids = list(cell_ids)
        shown = ", ".join(str(c) for c in self.cell_ids[:10])
        more = "..." if len(self.cell_ids) > 10 else ""
        super().__init__(f"Duplicate cell id(s): {shown}{more}")


class CardinalityMismatch(TidyCellError, ValueError):
    """Two components that must line up have different sizes or axes"""

    def __init__(self, what: str, expected, actual):
        self.what = what
        self.expected = expected
        self.actual = actual
        super().__init__(f"{what}: expected {expected}, got {actual}")


class PatternMismatch(TidyCellError, ValueError):
    """A string value did not match the pattern or separator a verb expects"""

    def __init__(self, column: str, cell_id: str, value, pattern: str):
        self.column = column
        self.cell_id = cell_id
        self.value = value
        self.pattern = pattern
        super().__init__(
            f"Value {value!r} in column '{column}' (cell '{cell_id}') "
            f"does not match pattern {pattern!r}"
        )


class DependencyCycle(TidyCellError, ValueError):
    """A computed column would end up depending on itself"""

    def __init__(self, column: str, via: list[str]):
        self.column = column
        self.via = list(via)
        super().__init__(
            f"Column '{column}' would depend on itself through: {' -> '.join(self.via)}"
        )


class PayloadKindError(TidyCellError, TypeError):
    """A nested column holds payloads of the wrong kind for the operation"""

    def __init__(self, column: str, expected: str, actual: str):
        self.column = column
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Nested column '{column}' holds {actual} payloads, expected {expected}"
        )


class EmptySelection(UserWarning):
    """A verb produced a valid dataset with zero cells"""
