"""
Comorbidity maps: named categories of codes, built by range expansion.

A map is built once from ordered category definitions (category name ->
list of code ranges), is immutable afterwards, and can be shared read-only
by any number of concurrent classifications.

Usage:
    definitions = {
        "CHF": [CodeRange("icd9", "428"), CodeRange("icd9", "425.4", "425.9")],
        "Diabetes": [CodeRange("icd9", "250.00", "250.93")],
    }
    cmap = build_map(definitions, name="demo")
    cmap["CHF"]              # tuple of Codes
    cmap.diagnostics         # problems found while building
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union
import hashlib
import json
import logging

import pandas as pd

from .catalog import TaxonomyCatalog
from .errors import ComorbidityMapperError, Diagnostic, MalformedCodeError, UndefinedCodeError
from .expand import expand_range
from .taxonomy import Code, CodeFormat, Taxonomy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CodeRange:
    """
    An inclusive range of codes in one taxonomy.

    ``end=None`` means the single code (or whole major) ``start``.
    ``defined=True`` keeps only codes officially defined in the catalog.
    """
    taxonomy: Taxonomy
    start: str
    end: Optional[str] = None
    defined: bool = False

    def __post_init__(self):
        object.__setattr__(self, "taxonomy", Taxonomy.parse(self.taxonomy))
        object.__setattr__(self, "start", str(self.start).strip())
        if self.end is not None:
            object.__setattr__(self, "end", str(self.end).strip())

    @classmethod
    def from_value(cls, value: Any, taxonomy: Any = None, defined: bool = False) -> "CodeRange":
        """
        Build a range from the loose forms used in definition tables.

        Accepts a CodeRange, a code string, a (start, end) pair, a
        (taxonomy, start, end[, defined]) tuple or a dict with keys
        start/end/taxonomy/defined.
        """
        if isinstance(value, CodeRange):
            return value
        if isinstance(value, str):
            return cls(taxonomy, value, None, defined)
        if isinstance(value, Mapping):
            return cls(
                value.get("taxonomy", taxonomy),
                value["start"],
                value.get("end"),
                bool(value.get("defined", defined)),
            )
        value = tuple(value)
        if len(value) == 1:
            return cls(taxonomy, value[0], None, defined)
        if len(value) == 2:
            return cls(taxonomy, value[0], value[1], defined)
        if len(value) in (3, 4):
            return cls(value[0], value[1], value[2], bool(value[3]) if len(value) == 4 else defined)
        raise ValueError(f"Cannot read a code range from {value!r}")

    def expand(self, catalog: Optional[TaxonomyCatalog] = None) -> Tuple[Code, ...]:
        return expand_range(
            self.taxonomy, self.start, self.end, defined=self.defined, catalog=catalog
        )

    def __str__(self) -> str:
        span = self.start if self.end is None else f"{self.start}-{self.end}"
        return f"{self.taxonomy}: {span}"


@dataclass(frozen=True)
class ExclusionRule:
    """When ``winner`` is present for a visit, ``loser`` is cleared."""
    winner: str
    loser: str

    @classmethod
    def from_value(cls, value: Any) -> "ExclusionRule":
        if isinstance(value, ExclusionRule):
            return value
        if isinstance(value, Mapping):
            return cls(value["winner"], value["loser"])
        winner, loser = value
        return cls(winner, loser)

    def __str__(self) -> str:
        return f"{self.winner} > {self.loser}"


def _index_key(code: Code) -> Tuple[str, str]:
    return (code.taxonomy.family, code.value)


class ComorbidityMap:
    """
    Immutable, ordered mapping of category name to short form codes.

    Category order is kept for display; codes inside a category are
    de-duplicated and in taxonomy order. The inverted code -> categories index
    used by the classifier is built once, here.
    """

    def __init__(
        self,
        categories: Mapping[str, Iterable[Code]],
        name: str = "ComorbidityMap",
        diagnostics: Iterable[Diagnostic] = (),
        exclusion_rules: Iterable[Any] = ()
    ):
        """
        Args:
            categories: Ordered mapping of category name to Codes
            name: Name of this map (e.g., "elixhauser_icd9")
            diagnostics: Problems found while building the map
            exclusion_rules: Rules declared alongside the map, in precedence order
        """
        self.name = name
        built = {}
        for category, codes in categories.items():
            unique = {}
            for code in codes:
                code = code.to_short()
                unique.setdefault((code.taxonomy, code.value), code)
            built[str(category)] = tuple(
                sorted(unique.values(), key=lambda c: (c.taxonomy.value, c.sort_key()))
            )
        self._categories = MappingProxyType(built)
        self.diagnostics: Tuple[Diagnostic, ...] = tuple(diagnostics)
        self.exclusion_rules: Tuple[ExclusionRule, ...] = tuple(
            ExclusionRule.from_value(rule) for rule in exclusion_rules
        )

        index: Dict[Tuple[str, str], List[int]] = {}
        for position, codes in enumerate(built.values()):
            for code in codes:
                slots = index.setdefault(_index_key(code), [])
                if position not in slots:
                    slots.append(position)
        self._index = MappingProxyType({key: tuple(v) for key, v in index.items()})

    @classmethod
    def from_dict(
        cls,
        mapping: Mapping[str, Iterable[str]],
        taxonomy: Union[str, Taxonomy],
        name: str = "ComorbidityMap",
        short_code: Optional[bool] = None
    ) -> "ComorbidityMap":
        """
        Load a stored map of category -> code strings (e.g. a shipped reference map).

        Raises:
            MalformedCodeError: if a code fails the taxonomy grammar
        """
        taxonomy = Taxonomy.parse(taxonomy)
        categories = {}
        for category, codes in mapping.items():
            categories[category] = [
                Code.parse(code, taxonomy, short_code=short_code) for code in codes
            ]
        return cls(categories, name=name)

    @property
    def categories(self) -> Tuple[str, ...]:
        return tuple(self._categories)

    @property
    def taxonomies(self) -> frozenset:
        return frozenset(code.taxonomy for codes in self._categories.values() for code in codes)

    @property
    def families(self) -> frozenset:
        return frozenset(taxonomy.family for taxonomy in self.taxonomies)

    def index(self) -> Mapping[Tuple[str, str], Tuple[int, ...]]:
        """Inverted index: (family, short code) -> positions of the categories holding it."""
        return self._index

    def codes(self, category: str, decimal: bool = False) -> List[str]:
        """Code strings of one category."""
        return [
            code.to_decimal().value if decimal else code.value
            for code in self[category]
        ]

    def to_dict(self, decimal: bool = False) -> Dict[str, List[str]]:
        return {category: self.codes(category, decimal=decimal) for category in self._categories}

    def fingerprint(self) -> str:
        """sha256 of the canonical JSON form; equal maps give equal fingerprints."""
        payload = {
            category: [f"{code.taxonomy.value}:{code.value}" for code in codes]
            for category, codes in self._categories.items()
        }
        blob = json.dumps(payload, separators=(",", ":"), ensure_ascii=True).encode("ascii")
        return hashlib.sha256(blob).hexdigest()

    def diff(self, other: "ComorbidityMap") -> Dict[str, Dict[str, List[str]]]:
        """
        Compare against another map, category by category.

        Returns:
            {category: {"added": [...], "removed": [...]}} for every category
            that differs; codes in ``self`` but not ``other`` are "added".
            An empty dict means the maps hold the same codes.
        """
        differences = {}
        for category in list(self._categories) + [c for c in other.categories if c not in self._categories]:
            mine = set(self.codes(category)) if category in self else set()
            theirs = set(other.codes(category)) if category in other else set()
            if mine != theirs:
                differences[category] = {
                    "added": sorted(mine - theirs),
                    "removed": sorted(theirs - mine),
                }
        return differences

    def summary(self) -> pd.DataFrame:
        """One row per category with its code count."""
        return pd.DataFrame({
            "category": list(self._categories),
            "n_codes": [len(codes) for codes in self._categories.values()],
        })

    def __getitem__(self, category: str) -> Tuple[Code, ...]:
        if category not in self._categories:
            raise KeyError(
                f"Category '{category}' not found. "
                f"Available categories: {list(self._categories)}"
            )
        return self._categories[category]

    def __iter__(self) -> Iterator[str]:
        return iter(self._categories)

    def __contains__(self, category: object) -> bool:
        return category in self._categories

    def __len__(self) -> int:
        return len(self._categories)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ComorbidityMap):
            return NotImplemented
        return self.fingerprint() == other.fingerprint()

    def __hash__(self) -> int:
        return hash(self.fingerprint())

    def __repr__(self) -> str:
        n_codes = sum(len(codes) for codes in self._categories.values())
        return (
            f"ComorbidityMap(name='{self.name}', "
            f"categories={len(self._categories)}, "
            f"total_codes={n_codes})"
        )


def _undefined_boundaries(
    category: str,
    code_range: CodeRange,
    catalog: TaxonomyCatalog
) -> List[Diagnostic]:
    found = []
    boundaries = [code_range.start] if code_range.end is None else [code_range.start, code_range.end]
    for boundary in boundaries:
        if not catalog.has_descendants(boundary, code_range.taxonomy):
            error = UndefinedCodeError(f"{boundary!r} is not a defined {code_range.taxonomy} code")
            found.append(Diagnostic.from_error(error, category=category, code=boundary))
    return found


def _exclusivity_conflicts(
    categories: Mapping[str, Sequence[Code]],
    rules: Sequence[ExclusionRule]
) -> List[Diagnostic]:
    found = []
    for rule in rules:
        if rule.winner not in categories or rule.loser not in categories:
            found.append(Diagnostic(
                kind="exclusivity_conflict",
                category=rule.loser if rule.winner in categories else rule.winner,
                detail=f"Exclusion rule {rule} names a category missing from the map",
            ))
            continue
        shared = (
            {_index_key(c) for c in categories[rule.winner]}
            & {_index_key(c) for c in categories[rule.loser]}
        )
        for family, code in sorted(shared):
            found.append(Diagnostic(
                kind="exclusivity_conflict",
                category=rule.loser,
                detail=f"{family} code {code} is in both '{rule.winner}' and '{rule.loser}'",
                code=code,
            ))
    return found


def _is_single_range(value: Any) -> bool:
    """A bare (start, end) or (taxonomy, start, end[, defined]) tuple, not a list of ranges."""
    return (
        isinstance(value, tuple)
        and 2 <= len(value) <= 4
        and all(isinstance(v, (str, bool, Taxonomy)) for v in value)
    )


def build_map(
    definitions: Mapping[str, Any],
    catalog: Optional[TaxonomyCatalog] = None,
    exclusion_rules: Optional[Iterable[Any]] = None,
    name: str = "ComorbidityMap",
    taxonomy: Optional[Union[str, Taxonomy]] = None,
    defined: bool = False,
    diagnostics: Optional[Iterable[Diagnostic]] = None
) -> ComorbidityMap:
    """
    Build a comorbidity map by expanding each category's ranges.

    A bad range never stops the rest of the map from being built: its error
    is recorded in ``diagnostics`` (and logged) and the category keeps the
    codes of its other ranges.

    Args:
        definitions: Ordered mapping of category name to a list of ranges
            (CodeRange or any form ``CodeRange.from_value`` reads), or a single
            range; a bare tuple of codes is one range, not a list of codes
        catalog: Reference tables for ranges with ``defined=True``
        exclusion_rules: (winner, loser) pairs in precedence order; codes
            shared by both sides of a rule are reported
        name: Name for the map
        taxonomy: Default taxonomy for ranges that do not name one
        defined: Default ``defined`` flag for ranges that do not set one
        diagnostics: Problems found before construction (e.g. unreadable
            config entries), reported ahead of those found here

    Returns:
        ComorbidityMap with ``diagnostics`` attached
    """
    diagnostics = list(diagnostics or ())
    categories: Dict[str, List[Code]] = {}
    rules = [ExclusionRule.from_value(rule) for rule in (exclusion_rules or ())]

    for category, ranges in definitions.items():
        if isinstance(ranges, (str, CodeRange, Mapping)) or _is_single_range(ranges):
            ranges = [ranges]
        codes: List[Code] = []
        for value in ranges:
            try:
                code_range = CodeRange.from_value(value, taxonomy=taxonomy, defined=defined)
                codes.extend(code_range.expand(catalog))
            except ComorbidityMapperError as e:
                logger.warning(f"Category '{category}': skipping range {value!r}: {e}")
                diagnostics.append(Diagnostic.from_error(e, category=category, code=str(value)))
                continue
            if code_range.defined:
                for diagnostic in _undefined_boundaries(category, code_range, catalog):
                    logger.warning(f"Category '{category}': {diagnostic.detail}")
                    diagnostics.append(diagnostic)
        categories[str(category)] = codes

    for diagnostic in _exclusivity_conflicts(categories, rules):
        logger.warning(f"Map '{name}': {diagnostic.detail}")
        diagnostics.append(diagnostic)

    result = ComorbidityMap(categories, name=name, diagnostics=diagnostics, exclusion_rules=rules)
    logger.info(
        f"Built {result!r}"
        + (f" with {len(diagnostics)} diagnostics" if diagnostics else "")
    )
    return result


def ranges_to_map(
    chapters: Mapping[str, Tuple[str, str]],
    taxonomy: Union[str, Taxonomy],
    defined: bool = False,
    catalog: Optional[TaxonomyCatalog] = None,
    name: str = "chapters"
) -> ComorbidityMap:
    """
    Turn a chapter table {name: (start, end)} into a map, one category per chapter.

    Useful for looking up which chapter or sub-chapter a code belongs to.
    """
    definitions = {
        chapter: [CodeRange(taxonomy, bounds[0], bounds[1], defined)]
        for chapter, bounds in chapters.items()
    }
    return build_map(definitions, catalog=catalog, name=name)


def get_invalid(
    comorbidity_map: ComorbidityMap,
    catalog: Optional[TaxonomyCatalog] = None
) -> Dict[str, List[str]]:
    """
    Codes in a map that fail their taxonomy grammar or, given a catalog,
    are not defined in it.

    Returns:
        {category: [invalid codes]} for categories with any; empty if valid
    """
    invalid = {}
    for category in comorbidity_map:
        bad = []
        for code in comorbidity_map[category]:
            try:
                Code.parse(code.value, code.taxonomy, short_code=code.format is CodeFormat.SHORT)
            except MalformedCodeError:
                bad.append(code.value)
                continue
            if (
                catalog is not None
                and catalog.has_taxonomy(code.taxonomy)
                and not catalog.is_defined(code.value, code.taxonomy)
            ):
                bad.append(code.value)
        if bad:
            invalid[category] = bad
    return invalid
