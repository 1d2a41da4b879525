"""
Range expansion: turn a (start, end) pair into every code between them.

Ranges are inclusive and follow taxonomy order:
- ICD-9 majors run 001-999, then V01-V91, then E000-E999.
- ICD-10 majors run alphabetically (A00 ... Z99), except lettered ICD-10-CM
  majors, which follow the major they are filed after (C43, C4A, C44).
- Inside a major, minors are ordered hierarchically ("" < "0" < "00" < "01" < "1").
- Both boundaries cover their children: "428.1" to "428.19" is valid, and an
  end boundary that is a bare major covers that whole major.

With ``defined=True`` only codes in the catalog's reference table are kept,
at any depth: "428.0" to "428.9" keeps the defined 42820 and 42821.

Undefined ranges are enumerated syntactically, so their depth is bounded:
- a range between two bare majors ("390" to "459") covers every minor of
  every major in it (for ICD-10 only the first minor character, as the
  alphanumeric grammar is too large to enumerate);
- otherwise minors are enumerated down to the deepest minor either boundary
  names, so "428.0" to "428.9" is exactly ten codes.
"""

from typing import Iterable, Iterator, List, Optional, Tuple, Union
import itertools
import logging
import string

from .catalog import TaxonomyCatalog
from .convert import LETTERED_MAJORS
from .errors import CatalogError, InvertedRangeError, MalformedCodeError
from .taxonomy import Code, CodeFormat, Taxonomy

logger = logging.getLogger(__name__)

ICD9_MAJORS: Tuple[str, ...] = (
    tuple(f"{n:03d}" for n in range(1, 1000))
    + tuple(f"V{n:02d}" for n in range(1, 92))
    + tuple(f"E{n:03d}" for n in range(0, 1000))
)

ICD10_MAJORS: Tuple[str, ...] = tuple(
    f"{letter}{n:02d}" for letter in string.ascii_uppercase for n in range(100)
)

_ICD9_MINOR_ALPHABET = string.digits
_ICD10_MINOR_ALPHABET = string.digits + string.ascii_uppercase

# Depth used by undefined ranges between two bare majors
_OPEN_DEPTH = {"icd9": 2, "icd10": 1}


def _boundary(taxonomy: Taxonomy, code: str, short_code: Optional[bool]) -> Tuple[str, str]:
    try:
        return taxonomy.scheme.to_parts(code, short_code=short_code)
    except MalformedCodeError as e:
        raise MalformedCodeError(f"Invalid {taxonomy} range boundary {code!r}: {e}") from e


def _minors(alphabet: str, depth: int) -> Iterator[str]:
    yield ""
    for length in range(1, depth + 1):
        for chars in itertools.product(alphabet, repeat=length):
            yield "".join(chars)


def majors_between(
    taxonomy: Union[str, Taxonomy],
    start_major: str,
    end_major: str
) -> List[str]:
    """
    Every syntactically constructible major in [start_major, end_major].

    Examples:
        >>> majors_between("icd9", "998", "V02")
        ['998', '999', 'V01', 'V02']
    """
    taxonomy = Taxonomy.parse(taxonomy)
    scheme = taxonomy.scheme
    low, high = scheme.major_key(start_major), scheme.major_key(end_major)
    if taxonomy.family == "icd9":
        candidates = ICD9_MAJORS
    else:
        extra = set(LETTERED_MAJORS) | {start_major, end_major}
        candidates = sorted(set(ICD10_MAJORS) | extra, key=scheme.major_key)
    return [major for major in candidates if low <= scheme.major_key(major) <= high]


def expand_range(
    taxonomy: Union[str, Taxonomy],
    start: str,
    end: Optional[str] = None,
    defined: bool = False,
    catalog: Optional[TaxonomyCatalog] = None,
    short_code: Optional[bool] = None
) -> Tuple[Code, ...]:
    """
    Expand a code range into its codes, in taxonomy order.

    Examples:
        >>> [c.to_decimal().value for c in expand_range("icd9", "428.0", "428.2")]
        ['428.0', '428.1', '428.2']

    Args:
        taxonomy: Taxonomy tag
        start: First code of the range (short or decimal)
        end: Last code of the range; ``start`` when None
        defined: Keep only codes defined in the catalog's reference table
        catalog: TaxonomyCatalog, required when ``defined`` is True
        short_code: Boundary format; guessed from a '.' per boundary when None

    Returns:
        Tuple of short form Codes, de-duplicated and ordered

    Raises:
        MalformedCodeError: if a boundary fails the taxonomy grammar
        InvertedRangeError: if start sorts after end
        CatalogError: if ``defined`` is set and the catalog lacks the taxonomy
    """
    taxonomy = Taxonomy.parse(taxonomy)
    scheme = taxonomy.scheme
    end = start if end is None else end

    start_major, start_minor = _boundary(taxonomy, start, short_code)
    end_major, end_minor = _boundary(taxonomy, end, short_code)
    low, high = scheme.major_key(start_major), scheme.major_key(end_major)

    if low > high or (low == high and end_minor and start_minor[:len(end_minor)] > end_minor):
        raise InvertedRangeError(
            f"Range start {start!r} is after end {end!r} in {taxonomy} order"
        )

    if defined:
        depth = None
    elif start_minor or end_minor:
        depth = max(len(start_minor), len(end_minor))
    else:
        depth = _OPEN_DEPTH[taxonomy.family]

    def in_range(major: str, minor: str) -> bool:
        if depth is not None and len(minor) > depth:
            return False
        key = scheme.major_key(major)
        if key == low and minor < start_minor:
            return False
        # the end boundary covers its own children
        if key == high and end_minor and minor[:len(end_minor)] > end_minor:
            return False
        return low <= key <= high

    if defined:
        if catalog is None or not catalog.has_taxonomy(taxonomy):
            raise CatalogError(
                f"Expanding defined {taxonomy} codes needs a catalog with a {taxonomy} table"
            )
        parts = [p for p in catalog.parts_between(taxonomy, low, high) if in_range(*p)]
    else:
        alphabet = _ICD9_MINOR_ALPHABET if taxonomy.family == "icd9" else _ICD10_MINOR_ALPHABET
        parts = []
        for major in majors_between(taxonomy, start_major, end_major):
            major_depth = min(depth, scheme.max_minor_length(major))
            parts.extend(
                (major, minor)
                for minor in sorted(_minors(alphabet, major_depth))
                if in_range(major, minor)
            )

    codes = tuple(
        Code(scheme.join_short(major, minor), taxonomy, CodeFormat.SHORT)
        for major, minor in parts
    )
    logger.debug(f"Expanded {taxonomy} {start}-{end} (defined={defined}) to {len(codes)} codes")
    return codes


def expand_ranges(
    taxonomy: Union[str, Taxonomy],
    ranges: Iterable[Tuple[str, str]],
    defined: bool = False,
    catalog: Optional[TaxonomyCatalog] = None
) -> Tuple[Code, ...]:
    """Union of several ranges, de-duplicated, in taxonomy order."""
    seen = {}
    for start, end in ranges:
        for code in expand_range(taxonomy, start, end, defined=defined, catalog=catalog):
            seen.setdefault(code.value, code)
    return tuple(sorted(seen.values(), key=Code.sort_key))
