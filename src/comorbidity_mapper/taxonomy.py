"""
Code model: taxonomy tags, code formats and the Code value type.

Supports:
- ICD-9 (ICD-9-CM diagnosis codes, including V and E codes)
- ICD-10 (WHO), ICD-10-CM (US) and ICD-10-CA (Canada)

A Code is an immutable string value tagged with its taxonomy and format.
Parsing, conversion and validity rules live in the per-family schemes in
``convert.py``; this module only holds the tags and the value type.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union
import re

from .errors import UnknownTaxonomyError


class Taxonomy(Enum):
    """Supported code systems."""

    ICD9 = "icd9"
    ICD10 = "icd10"
    ICD10CM = "icd10cm"
    ICD10CA = "icd10ca"

    @property
    def family(self) -> str:
        """Grammar family: 'icd9' or 'icd10'."""
        return "icd9" if self is Taxonomy.ICD9 else "icd10"

    @property
    def scheme(self):
        """Parsing/conversion scheme for this taxonomy's family."""
        from .convert import scheme_for
        return scheme_for(self)

    @classmethod
    def parse(cls, value: Union[str, int, "Taxonomy"]) -> "Taxonomy":
        """
        Resolve a taxonomy tag from its many spellings.

        Examples:
            >>> Taxonomy.parse("ICD-9-CM")
            <Taxonomy.ICD9: 'icd9'>
            >>> Taxonomy.parse(10)
            <Taxonomy.ICD10: 'icd10'>

        Raises:
            UnknownTaxonomyError: if the tag is not recognised
        """
        if isinstance(value, Taxonomy):
            return value
        key = _TAG_CLEAN_RE.sub("", str(value)).lower()
        if key in TAXONOMY_ALIASES:
            return TAXONOMY_ALIASES[key]
        raise UnknownTaxonomyError(f"Unknown taxonomy: {value!r}")

    def __str__(self) -> str:
        return self.value


_TAG_CLEAN_RE = re.compile(r"[\s\-_.]")

# Keys are lowercase with separators stripped
TAXONOMY_ALIASES = {
    "icd9": Taxonomy.ICD9,
    "icd9cm": Taxonomy.ICD9,
    "9": Taxonomy.ICD9,
    "icd10": Taxonomy.ICD10,
    "icd10who": Taxonomy.ICD10,
    "10": Taxonomy.ICD10,
    "icd10cm": Taxonomy.ICD10CM,
    "icd10ca": Taxonomy.ICD10CA,
}


class CodeFormat(Enum):
    """Short codes have no decimal point; decimal codes separate major and minor."""

    SHORT = "short"
    DECIMAL = "decimal"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Code:
    """
    Immutable code value tagged with taxonomy and format.

    Construct validated, canonical codes with ``Code.parse``; the plain
    constructor trusts its arguments.

    Usage:
        code = Code.parse("428.0", "icd9")
        code.to_short()      # Code('4280', icd9, short)
        code.parts()         # ('428', '0')
    """
    value: str
    taxonomy: Taxonomy
    format: CodeFormat = CodeFormat.SHORT

    @classmethod
    def parse(
        cls,
        value: str,
        taxonomy: Union[str, Taxonomy],
        short_code: Optional[bool] = None
    ) -> "Code":
        """
        Parse and canonicalise a code string.

        Args:
            value: Code string, short or decimal
            taxonomy: Taxonomy tag
            short_code: Force the input format; guessed from a '.' when None

        Returns:
            Canonical Code in the detected (or forced) format
        """
        taxonomy = Taxonomy.parse(taxonomy)
        scheme = taxonomy.scheme
        major, minor = scheme.to_parts(value, short_code=short_code)
        if short_code is None:
            short_code = "." not in str(value)
        if short_code:
            return cls(scheme.join_short(major, minor), taxonomy, CodeFormat.SHORT)
        return cls(scheme.join_decimal(major, minor), taxonomy, CodeFormat.DECIMAL)

    def parts(self) -> Tuple[str, str]:
        """Split into (major, minor)."""
        return self.taxonomy.scheme.to_parts(
            self.value, short_code=self.format is CodeFormat.SHORT
        )

    def to_short(self) -> "Code":
        if self.format is CodeFormat.SHORT:
            return self
        major, minor = self.parts()
        return Code(self.taxonomy.scheme.join_short(major, minor), self.taxonomy, CodeFormat.SHORT)

    def to_decimal(self) -> "Code":
        if self.format is CodeFormat.DECIMAL:
            return self
        major, minor = self.parts()
        return Code(self.taxonomy.scheme.join_decimal(major, minor), self.taxonomy, CodeFormat.DECIMAL)

    def sort_key(self) -> tuple:
        """Position in taxonomy order."""
        return self.taxonomy.scheme.sort_key(*self.parts())

    def __str__(self) -> str:
        return self.value

    def __repr__(self) -> str:
        return f"Code('{self.value}', {self.taxonomy}, {self.format})"
