"""
Exceptions and diagnostic records for comorbidity_mapper.

Every exception carries a ``kind`` tag. Map construction and classification
catch these per range / per record and turn them into ``Diagnostic`` entries
instead of aborting the whole batch.
"""

from dataclasses import dataclass
from typing import Optional


class ComorbidityMapperError(Exception):
    """Base class for all errors raised by this package."""

    kind = "error"


class MalformedCodeError(ComorbidityMapperError, ValueError):
    """Code does not parse against the taxonomy grammar."""

    kind = "malformed"


class UndefinedCodeError(ComorbidityMapperError, ValueError):
    """Code is syntactically valid but absent from the reference table."""

    kind = "undefined"


class InvertedRangeError(ComorbidityMapperError, ValueError):
    """Range start sorts after range end."""

    kind = "inverted_range"


class VersionGuessError(ComorbidityMapperError, ValueError):
    """ICD version could not be guessed from an unlabelled code."""

    kind = "ambiguous_version"


class UnknownTaxonomyError(ComorbidityMapperError, KeyError):
    """Taxonomy tag is not one of the supported code systems."""

    kind = "unknown_taxonomy"

    def __str__(self) -> str:
        # KeyError quotes its message otherwise
        return str(self.args[0]) if self.args else ""


class CatalogError(ComorbidityMapperError, LookupError):
    """A reference table is needed but the catalog does not hold it."""

    kind = "missing_catalog"


@dataclass(frozen=True)
class Diagnostic:
    """
    A problem found while building a map or classifying records.
    
    Attributes:
        kind: Error kind, e.g. "malformed", "undefined", "inverted_range"
        category: Category (or visit id, at classification time) concerned
        detail: Human readable message
        code: Offending code or range, if any
    """
    kind: str
    category: Optional[str]
    detail: str
    code: Optional[str] = None

    @classmethod
    def from_error(
        cls,
        error: ComorbidityMapperError,
        category: Optional[str] = None,
        code: Optional[str] = None
    ) -> "Diagnostic":
        return cls(kind=error.kind, category=category, detail=str(error), code=code)
