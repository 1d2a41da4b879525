"""
Format conversion for ICD codes.

ICD codes come in two forms:
- short:   no decimal point, e.g. "4280", "V1005", "E9501", "I5021"
- decimal: a point after the major category, e.g. "428.0", "V10.05", "E950.1", "I50.21"

Every code splits into a *major* (top level category) and a *minor* (the
subsidiary digits or letters, possibly empty). Each code family has a scheme
that knows its grammar:

- ICD-9:  numeric majors are three digits, V majors are V plus two digits and
          E majors are E plus three digits. Minors are up to two digits (one
          for E codes). Short input shorter than the major width is a major on
          its own and is zero padded ("1" -> "001", "V1" -> "V01").
- ICD-10: the major is the first three characters (letter, digit, digit or
          letter); the minor is up to four alphanumerics, never padded.

All public converters accept a single string, a Code, any iterable of
strings, a pandas Series or a pandas Categorical, and return the same shape.
Results are memoised per distinct input string in a ConversionCache, so bulk
conversion only ever parses each distinct value once; for Categorical input
only the categories are converted.
"""

from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Tuple, Union
import logging
import math
import re
import threading

import numpy as np
import pandas as pd

from .errors import ComorbidityMapperError, MalformedCodeError, VersionGuessError
from .taxonomy import Code, CodeFormat, Taxonomy

logger = logging.getLogger(__name__)


def _clean(code: Any) -> str:
    if not isinstance(code, str):
        if isinstance(code, Code):
            return code.value
        raise MalformedCodeError(f"Not a code string: {code!r}")
    return code.strip().upper()


class CodeScheme:
    """Grammar, parts splitting and ordering for one code family."""

    family = ""

    def short_to_parts(self, code: str) -> Tuple[str, str]:
        raise NotImplementedError

    def decimal_to_parts(self, code: str) -> Tuple[str, str]:
        raise NotImplementedError

    def major_key(self, major: str):
        raise NotImplementedError

    def max_minor_length(self, major: str) -> int:
        raise NotImplementedError

    def to_parts(self, code: Any, short_code: Optional[bool] = None) -> Tuple[str, str]:
        """
        Split a code into (major, minor).

        Args:
            code: Code string
            short_code: Input format; a '.' means decimal when None

        Raises:
            MalformedCodeError: if the code does not match the grammar
        """
        text = _clean(code)
        if short_code is None:
            short_code = "." not in text
        if short_code:
            return self.short_to_parts(text)
        return self.decimal_to_parts(text)

    def join_short(self, major: str, minor: str) -> str:
        return major + minor

    def join_decimal(self, major: str, minor: str) -> str:
        return f"{major}.{minor}" if minor else major

    def to_short(self, code: Any, short_code: Optional[bool] = None) -> str:
        return self.join_short(*self.to_parts(code, short_code=short_code))

    def to_decimal(self, code: Any, short_code: Optional[bool] = None) -> str:
        return self.join_decimal(*self.to_parts(code, short_code=short_code))

    def is_valid(self, code: Any, short_code: Optional[bool] = None) -> bool:
        try:
            self.to_parts(code, short_code=short_code)
        except MalformedCodeError:
            return False
        return True

    def is_canonical(self, code: Any, short_code: Optional[bool] = None) -> bool:
        """True if the code is valid and needs no padding to reach canonical form."""
        try:
            major, minor = self.to_parts(code, short_code=short_code)
        except MalformedCodeError:
            return False
        text = _clean(code).rstrip(".")
        return text in (self.join_short(major, minor), self.join_decimal(major, minor))

    def sort_key(self, major: str, minor: str) -> tuple:
        """Taxonomy order: by major, then hierarchically by minor."""
        return (self.major_key(major), minor)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class Icd9Scheme(CodeScheme):

    family = "icd9"

    _SHORT_RE = re.compile(r"^(?:(?P<num>\d{1,5})|V(?P<v>\d{1,4})|E(?P<e>\d{1,4}))$")
    _DECIMAL_RE = re.compile(
        r"^(?:(?P<num>\d{1,3})|V(?P<v>\d{1,2})|E(?P<e>\d{1,3}))(?:\.(?P<minor>\d{0,2}))?$"
    )

    def short_to_parts(self, code: str) -> Tuple[str, str]:
        match = self._SHORT_RE.match(code)
        if not match:
            raise MalformedCodeError(f"Not a short ICD-9 code: {code!r}")
        if match.group("num") is not None:
            return self._split(match.group("num"), "", 3)
        if match.group("v") is not None:
            return self._split(match.group("v"), "V", 2)
        return self._split(match.group("e"), "E", 3)

    @staticmethod
    def _split(digits: str, prefix: str, width: int) -> Tuple[str, str]:
        if len(digits) <= width:
            return prefix + digits.zfill(width), ""
        return prefix + digits[:width], digits[width:]

    def decimal_to_parts(self, code: str) -> Tuple[str, str]:
        match = self._DECIMAL_RE.match(code)
        if not match:
            raise MalformedCodeError(f"Not a decimal ICD-9 code: {code!r}")
        minor = match.group("minor") or ""
        if match.group("num") is not None:
            return match.group("num").zfill(3), minor
        if match.group("v") is not None:
            return "V" + match.group("v").zfill(2), minor
        if len(minor) > 1:
            raise MalformedCodeError(f"E codes have a single minor digit: {code!r}")
        return "E" + match.group("e").zfill(3), minor

    def major_key(self, major: str) -> Tuple[int, int]:
        # numeric < V < E
        if major.startswith("V"):
            return (1, int(major[1:]))
        if major.startswith("E"):
            return (2, int(major[1:]))
        return (0, int(major))

    def max_minor_length(self, major: str) -> int:
        return 1 if major.startswith("E") else 2


# ICD-10-CM majors with a letter in third place, and the major they follow
LETTERED_MAJORS = {
    "C4A": "C43",
    "C7A": "C75",
    "C7B": "C75",
    "D3A": "D36",
    "M1A": "M10",
    "Z3A": "Z39",
}


class Icd10Scheme(CodeScheme):

    family = "icd10"

    _SHORT_RE = re.compile(r"^(?P<major>[A-Z]\d[0-9A-Z])(?P<minor>[0-9A-Z]{0,4})$")
    _DECIMAL_RE = re.compile(r"^(?P<major>[A-Z]\d[0-9A-Z])(?:\.(?P<minor>[0-9A-Z]{0,4}))?$")

    def short_to_parts(self, code: str) -> Tuple[str, str]:
        match = self._SHORT_RE.match(code)
        if not match:
            raise MalformedCodeError(f"Not a short ICD-10 code: {code!r}")
        return match.group("major"), match.group("minor")

    def decimal_to_parts(self, code: str) -> Tuple[str, str]:
        match = self._DECIMAL_RE.match(code)
        if not match:
            raise MalformedCodeError(f"Not a decimal ICD-10 code: {code!r}")
        return match.group("major"), match.group("minor") or ""

    def major_key(self, major: str) -> Tuple[str, int, str]:
        # C4A sorts between C43 and C44; unlisted lettered majors close their decade
        if major[2].isdigit():
            return (major, 0, "")
        return (LETTERED_MAJORS.get(major, major[:2] + "9"), 1, major)

    def max_minor_length(self, major: str) -> int:
        return 4


ICD9_SCHEME = Icd9Scheme()
ICD10_SCHEME = Icd10Scheme()

SCHEMES = {
    "icd9": ICD9_SCHEME,
    "icd10": ICD10_SCHEME,
}


def scheme_for(taxonomy: Union[str, Taxonomy]) -> CodeScheme:
    """Get the scheme implementing a taxonomy's grammar."""
    return SCHEMES[Taxonomy.parse(taxonomy).family]


def guess_version(
    code: Any,
    short_code: Optional[bool] = None,
    catalog=None
) -> Taxonomy:
    """
    Guess the ICD version of an unlabelled code from its syntax.

    Numeric codes are ICD-9, codes starting with letters other than V and E
    are ICD-10. V and E codes can match both grammars; ICD-9 wins only when it
    is written at full major width ("E950.1", "V1005"), and remaining ties are
    broken by which taxonomy of ``catalog`` defines the code.

    Examples:
        >>> guess_version("4280")
        <Taxonomy.ICD9: 'icd9'>
        >>> guess_version("E11.9")
        <Taxonomy.ICD10: 'icd10'>

    Args:
        code: Code string
        short_code: Input format; guessed from a '.' when None
        catalog: Optional TaxonomyCatalog used to break ties

    Returns:
        Taxonomy.ICD9 or Taxonomy.ICD10

    Raises:
        VersionGuessError: if the code matches neither grammar, or both and
            nothing breaks the tie
    """
    try:
        text = _clean(code)
    except MalformedCodeError as e:
        raise VersionGuessError(str(e)) from e
    icd9 = ICD9_SCHEME.is_valid(text, short_code)
    icd10 = ICD10_SCHEME.is_valid(text, short_code)
    if icd9 and not icd10:
        return Taxonomy.ICD9
    if icd10 and not icd9:
        return Taxonomy.ICD10
    if not icd9:
        raise VersionGuessError(f"Code {code!r} matches neither the ICD-9 nor the ICD-10 grammar")
    if not ICD9_SCHEME.is_canonical(text, short_code):
        return Taxonomy.ICD10
    if catalog is not None:
        in_icd9 = Taxonomy.ICD9 in catalog.taxonomies and catalog.is_defined(text, Taxonomy.ICD9)
        in_icd10 = any(
            catalog.is_defined(text, taxonomy)
            for taxonomy in catalog.taxonomies
            if taxonomy.family == "icd10"
        )
        if in_icd9 != in_icd10:
            return Taxonomy.ICD9 if in_icd9 else Taxonomy.ICD10
    raise VersionGuessError(f"Code {code!r} is ambiguous between ICD-9 and ICD-10")


class ConversionCache:
    """
    Memoising cache for code conversions, keyed by distinct input string.

    Failures are cached too, so a malformed value repeated a million times is
    parsed once. Safe to share between threads: entries are computed
    deterministically, so a race at worst computes one twice.

    Usage:
        cache = ConversionCache()
        short_to_decimal(series, "icd9", cache=cache)
        cache.get_stats()   # {'lookups': ..., 'hits': ..., 'misses': ..., 'hit_rate': ...}
    """

    def __init__(self, max_size: Optional[int] = None):
        """
        Args:
            max_size: Entries kept before the cache is emptied (None: unbounded)
        """
        self.max_size = max_size
        self._values: Dict[Hashable, Any] = {}
        self._lock = threading.Lock()
        self.reset_stats()

    def get(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        with self._lock:
            self._stats["lookups"] += 1
            hit = key in self._values
            if hit:
                self._stats["hits"] += 1
                value = self._values[key]
            else:
                self._stats["misses"] += 1
        if not hit:
            try:
                value = compute()
            except ComorbidityMapperError as e:
                value = e
            with self._lock:
                if self.max_size is not None and len(self._values) >= self.max_size:
                    logger.debug(f"Conversion cache full ({self.max_size} entries), clearing")
                    self._values = {}
                self._values[key] = value
        if isinstance(value, ComorbidityMapperError):
            raise type(value)(*value.args)
        return value

    def get_stats(self) -> Dict:
        """Get lookup statistics."""
        with self._lock:
            stats = self._stats.copy()
            stats["size"] = len(self._values)
        stats["hit_rate"] = stats["hits"] / stats["lookups"] if stats["lookups"] else 0.0
        return stats

    def reset_stats(self):
        with self._lock:
            self._stats = {"lookups": 0, "hits": 0, "misses": 0}

    def clear(self):
        with self._lock:
            self._values = {}
        self.reset_stats()

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"ConversionCache(size={len(self._values)}, max_size={self.max_size})"


# Shared default; holds only derived, deterministic values
DEFAULT_CACHE = ConversionCache(max_size=2_000_000)


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, float):
        return math.isnan(value)
    return value is pd.NA or value is pd.NaT


def _resolve(text: str, taxonomy: Optional[Taxonomy], short_code: Optional[bool]) -> Taxonomy:
    if taxonomy is not None:
        return taxonomy
    return guess_version(text, short_code=short_code)


def _short_to_decimal(value: str, taxonomy: Optional[Taxonomy]) -> str:
    taxonomy = _resolve(value, taxonomy, True)
    return taxonomy.scheme.to_decimal(value, short_code=True)


def _decimal_to_short(value: str, taxonomy: Optional[Taxonomy]) -> str:
    taxonomy = _resolve(value, taxonomy, False)
    return taxonomy.scheme.to_short(value, short_code=False)


def _normalize_short(value: str, taxonomy: Optional[Taxonomy]) -> str:
    taxonomy = _resolve(value, taxonomy, None)
    return taxonomy.scheme.to_short(value)


def _short_to_parts(value: str, taxonomy: Optional[Taxonomy]) -> Tuple[str, str]:
    taxonomy = _resolve(value, taxonomy, True)
    return taxonomy.scheme.to_parts(value, short_code=True)


def _decimal_to_parts(value: str, taxonomy: Optional[Taxonomy]) -> Tuple[str, str]:
    taxonomy = _resolve(value, taxonomy, False)
    return taxonomy.scheme.to_parts(value, short_code=False)


_CONVERTERS = {
    "short_to_decimal": _short_to_decimal,
    "decimal_to_short": _decimal_to_short,
    "normalize_short": _normalize_short,
    "short_to_parts": _short_to_parts,
    "decimal_to_parts": _decimal_to_parts,
}


def _convert(
    x: Any,
    taxonomy: Optional[Union[str, Taxonomy]],
    direction: str,
    cache: Optional[ConversionCache],
    errors: str
) -> Any:
    if errors not in ("raise", "coerce"):
        raise ValueError("errors must be 'raise' or 'coerce'")
    cache = DEFAULT_CACHE if cache is None else cache
    taxonomy = Taxonomy.parse(taxonomy) if taxonomy is not None else None
    convert_one = _CONVERTERS[direction]

    def one(value):
        if _is_missing(value):
            return value
        key = (taxonomy, direction, value)
        try:
            return cache.get(key, lambda: convert_one(value, taxonomy))
        except (MalformedCodeError, VersionGuessError):
            if errors == "coerce":
                return None
            raise

    if isinstance(x, Code):
        return _convert_code(x, direction)
    if isinstance(x, str) or _is_missing(x):
        return one(x)
    if isinstance(x, pd.Categorical):
        return _convert_categorical(x, one)
    if isinstance(x, pd.Series):
        if isinstance(x.dtype, pd.CategoricalDtype):
            return pd.Series(_convert_categorical(x.array, one), index=x.index, name=x.name)
        uniques = pd.unique(x.to_numpy(dtype=object))
        lookup = {value: one(value) for value in uniques if not _is_missing(value)}
        if direction.endswith("_parts"):
            pairs = [lookup.get(value, (None, None)) for value in x.to_numpy(dtype=object)]
            return pd.DataFrame(pairs, columns=["major", "minor"], index=x.index)
        return x.map(lambda value: lookup.get(value, value)).astype(object)
    return [one(value) for value in x]


def _convert_code(code: Code, direction: str) -> Any:
    if direction == "short_to_decimal":
        if code.format is not CodeFormat.SHORT:
            raise MalformedCodeError(f"Expected a short code, got {code!r}")
        return code.to_decimal()
    if direction == "decimal_to_short":
        if code.format is not CodeFormat.DECIMAL:
            raise MalformedCodeError(f"Expected a decimal code, got {code!r}")
        return code.to_short()
    if direction == "normalize_short":
        return code.to_short()
    return code.parts()


def _convert_categorical(values: pd.Categorical, one: Callable[[Any], Any]) -> pd.Categorical:
    converted = [one(category) for category in values.categories]
    levels = list(pd.unique(pd.Series([c for c in converted if not _is_missing(c)], dtype=object)))
    if len(levels) == len(converted):
        return values.rename_categories(converted)
    # several old levels collapsed onto one new level, or became missing
    position = {level: i for i, level in enumerate(levels)}
    remap = np.array(
        [position.get(c, -1) if not _is_missing(c) else -1 for c in converted] + [-1],
        dtype=np.int64
    )
    return pd.Categorical.from_codes(remap[values.codes], categories=levels)


def short_to_decimal(
    x: Any,
    taxonomy: Optional[Union[str, Taxonomy]] = None,
    cache: Optional[ConversionCache] = None,
    errors: str = "raise"
) -> Any:
    """
    Convert short form codes to decimal form.

    Examples:
        >>> short_to_decimal("4280", "icd9")
        '428.0'
        >>> short_to_decimal(["V1005", "E9501"], "icd9")
        ['V10.05', 'E950.1']

    Args:
        x: A code string, Code, iterable, pandas Series or Categorical
        taxonomy: Taxonomy tag; guessed per distinct value when None
        cache: ConversionCache to use (default: the shared cache)
        errors: 'raise' on malformed codes, or 'coerce' them to None

    Returns:
        Converted values, in the same shape as ``x``
    """
    return _convert(x, taxonomy, "short_to_decimal", cache, errors)


def decimal_to_short(
    x: Any,
    taxonomy: Optional[Union[str, Taxonomy]] = None,
    cache: Optional[ConversionCache] = None,
    errors: str = "raise"
) -> Any:
    """
    Convert decimal form codes to short form.

    Mostly removes the decimal point, but missing leading zeroes are added so
    the short code is unambiguous ("1.2" -> "0012" for ICD-9).
    Same arguments as ``short_to_decimal``.
    """
    return _convert(x, taxonomy, "decimal_to_short", cache, errors)


def normalize_short(
    x: Any,
    taxonomy: Optional[Union[str, Taxonomy]] = None,
    cache: Optional[ConversionCache] = None,
    errors: str = "raise"
) -> Any:
    """Canonical short form of codes given in either format."""
    return _convert(x, taxonomy, "normalize_short", cache, errors)


def short_to_parts(
    x: Any,
    taxonomy: Optional[Union[str, Taxonomy]] = None,
    cache: Optional[ConversionCache] = None,
    errors: str = "raise"
) -> Any:
    """
    Split short codes into (major, minor).

    A single code gives a tuple, a Series gives a DataFrame with ``major`` and
    ``minor`` columns, other iterables give a list of tuples.
    """
    return _convert(x, taxonomy, "short_to_parts", cache, errors)


def decimal_to_parts(
    x: Any,
    taxonomy: Optional[Union[str, Taxonomy]] = None,
    cache: Optional[ConversionCache] = None,
    errors: str = "raise"
) -> Any:
    """Split decimal codes into (major, minor); shapes as ``short_to_parts``."""
    return _convert(x, taxonomy, "decimal_to_parts", cache, errors)


def is_valid(
    code: Any,
    taxonomy: Union[str, Taxonomy],
    short_code: Optional[bool] = None
) -> bool:
    """Check a code against a taxonomy's grammar."""
    return Taxonomy.parse(taxonomy).scheme.is_valid(code, short_code=short_code)


def relevel(
    values: Any,
    levels: Iterable[Any],
    na_level: Optional[str] = None
) -> pd.Categorical:
    """
    Re-level categorical data onto a new set of levels.

    Works on the integer codes, so shared levels are never expanded into
    individual values. Values not in ``levels`` become missing. With
    ``na_level``, missing values (including those dropped by the re-levelling)
    are assigned to that level instead, appended to the levels if absent.

    Examples:
        >>> relevel(pd.Categorical(["a", "b", None]), ["b", "c"]).tolist()
        [nan, 'b', nan]
        >>> relevel(pd.Categorical(["a", "b", None]), ["b"], na_level="NA").tolist()
        ['NA', 'b', 'NA']

    Args:
        values: Categorical, Series or any sequence
        levels: New levels, in order; missing entries and repeats are ignored
        na_level: Optional explicit level for missing values

    Returns:
        pandas Categorical with categories ``levels`` (plus ``na_level``)
    """
    if isinstance(values, pd.Series):
        values = values.array if isinstance(values.dtype, pd.CategoricalDtype) else values.to_numpy(dtype=object)
    if not isinstance(values, pd.Categorical):
        values = pd.Categorical(values)
    new_levels: List[Any] = [
        level for level in pd.unique(pd.Series(list(levels), dtype=object))
        if not _is_missing(level)
    ]
    if na_level is not None and na_level not in new_levels:
        new_levels.append(na_level)
    out = values.set_categories(new_levels)
    if na_level is not None:
        out = out.fillna(na_level)
    return out
