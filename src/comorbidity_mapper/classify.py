"""
Classification of visit codes into comorbidity categories.

Given (visit, code) records and a ComorbidityMap, produce a visit x category
matrix: boolean presence by default, or the number of matching codes.

Records may be given as VisitCodeRecord tuples or as a long format DataFrame
with one row per code occurrence. Codes may be short, decimal or composite
(DIAGNOSIS//ICD//9//4280). Problem records never abort a run; each is
counted in the result summary with the reason it was skipped.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union
import itertools
import logging

import numpy as np
import pandas as pd
from tqdm import tqdm

from .catalog import TaxonomyCatalog
from .comorbidity_map import ComorbidityMap, ExclusionRule
from .composite import parse_composite_code
from .convert import ConversionCache, _is_missing, guess_version, normalize_short, relevel
from .errors import MalformedCodeError, UnknownTaxonomyError
from .taxonomy import Taxonomy

logger = logging.getLogger(__name__)

RECORD_COLUMNS = ["visit_id", "code", "taxonomy", "poa"]

# Reasons a record is left out of the matrix. "unmatched" records are
# classified (their visit gets a row) but hit no category.
EXCLUDED_REASONS = ("missing_visit", "poa_filtered", "missing", "unknown_taxonomy", "malformed")


class VisitCodeRecord(NamedTuple):
    """One code occurrence for a visit."""
    visit_id: Any
    code: Optional[str]
    taxonomy: Optional[str] = None
    poa: Optional[str] = None


def _poa_flags(poa: pd.Series) -> pd.Series:
    return poa.astype("string").str.strip().str.upper()


# Present-on-admission filters; flags are Y, N, U, W or missing
POA_FILTERS = {
    "yes": lambda flags: _poa_flags(flags).eq("Y").fillna(False),
    "no": lambda flags: _poa_flags(flags).eq("N").fillna(False),
    "not_yes": lambda flags: ~_poa_flags(flags).eq("Y").fillna(False),
    "not_no": lambda flags: ~_poa_flags(flags).eq("N").fillna(False),
}


@dataclass
class ClassificationSummary:
    """
    What happened to the input records.

    Attributes:
        total_records: Number of input records
        matched: Records that hit at least one category
        counts: Number of records per skip reason
        skipped: DataFrame of the records that were skipped or unmatched,
            with a ``reason`` column
    """
    total_records: int = 0
    matched: int = 0
    counts: Dict[str, int] = field(default_factory=dict)
    skipped: pd.DataFrame = field(
        default_factory=lambda: pd.DataFrame(columns=["visit_id", "code", "taxonomy", "reason"])
    )

    @property
    def unmatched(self) -> int:
        return self.counts.get("unmatched", 0)

    @property
    def excluded(self) -> int:
        return sum(self.counts.get(reason, 0) for reason in EXCLUDED_REASONS)

    def merge(self, other: "ClassificationSummary") -> "ClassificationSummary":
        counts = Counter(self.counts)
        counts.update(other.counts)
        frames = [f for f in (self.skipped, other.skipped) if len(f)]
        skipped = pd.concat(frames, ignore_index=True) if frames else self.skipped
        return ClassificationSummary(
            total_records=self.total_records + other.total_records,
            matched=self.matched + other.matched,
            counts=dict(counts),
            skipped=skipped,
        )


class ClassificationResult:
    """
    Visit x category matrix plus the summary of skipped records.

    ``matrix`` is a DataFrame indexed by visit id, with one column per map
    category in map order; values are bool, or int64 when counting.
    """

    def __init__(self, matrix: pd.DataFrame, summary: Optional[ClassificationSummary] = None):
        self.matrix = matrix
        self.summary = summary if summary is not None else ClassificationSummary()

    @property
    def visits(self) -> List[Any]:
        return self.matrix.index.tolist()

    @property
    def categories(self) -> List[str]:
        return self.matrix.columns.tolist()

    def to_frame(self, visit_name: str = "visit_id") -> pd.DataFrame:
        """Matrix as a data frame with the visit ids in a ``visit_name`` column."""
        out = self.matrix.reset_index(drop=False)
        out.columns = [visit_name] + self.categories
        return out

    @classmethod
    def from_frame(cls, df: pd.DataFrame, visit_name: str = "visit_id") -> "ClassificationResult":
        """Rebuild a result from a data frame with a visit column and one column per category."""
        if visit_name not in df.columns:
            raise ValueError(
                f"Visit column '{visit_name}' not found. "
                f"Available columns: {df.columns.tolist()}"
            )
        matrix = df.set_index(visit_name)
        matrix.index.name = "visit_id"
        return cls(matrix)

    def __getitem__(self, category: str) -> pd.Series:
        return self.matrix[category]

    def __len__(self) -> int:
        return len(self.matrix)

    def __repr__(self) -> str:
        return (
            f"ClassificationResult(visits={len(self.matrix)}, "
            f"categories={self.matrix.shape[1]}, "
            f"unmatched={self.summary.unmatched}, excluded={self.summary.excluded})"
        )


def _records_frame(
    records: Any,
    visit_column: str = "visit_id",
    code_column: str = "code",
    taxonomy_column: Optional[str] = "taxonomy",
    poa_column: Optional[str] = "poa"
) -> pd.DataFrame:
    if isinstance(records, pd.DataFrame):
        for column in (visit_column, code_column):
            if column not in records.columns:
                raise ValueError(
                    f"Column '{column}' not found. "
                    f"Available columns: {records.columns.tolist()}"
                )

        def optional(column):
            if column and column in records.columns:
                return records[column].to_numpy(dtype=object)
            return np.full(len(records), None, dtype=object)

        return pd.DataFrame({
            "visit_id": records[visit_column].to_numpy(),
            "code": records[code_column].to_numpy(dtype=object),
            "taxonomy": optional(taxonomy_column),
            "poa": optional(poa_column),
        })

    rows = [tuple(r) if isinstance(r, VisitCodeRecord) else tuple(VisitCodeRecord(*r)) for r in records]
    if not rows:
        return pd.DataFrame({column: pd.Series(dtype=object) for column in RECORD_COLUMNS})
    return pd.DataFrame(rows, columns=RECORD_COLUMNS).astype(
        {"code": object, "taxonomy": object, "poa": object}
    )


def _unique_in_order(values: Iterable[Any]) -> List[Any]:
    return [v for v in pd.unique(pd.Series(list(values), dtype=object)) if not _is_missing(v)]


class Classifier:
    """
    Classifies visit codes against one shared, read-only ComorbidityMap.

    The map's inverted index (code -> category positions) is built once, so
    each code lookup is a single dict access whatever the number of
    categories. A Classifier holds no per-call state: any number of
    ``classify`` calls may run concurrently on one instance.

    Usage:
        classifier = Classifier(cmap)
        result = classifier.classify(
            [("v1", "428.0"), ("v1", "250.00"), ("v2", "199.1")]
        )
        result.matrix           # visits x categories, bool
        result.summary.counts   # e.g. {'unmatched': 0}
    """

    def __init__(
        self,
        comorbidity_map: ComorbidityMap,
        exclusion_rules: Optional[Iterable[Any]] = None,
        catalog: Optional[TaxonomyCatalog] = None,
        cache: Optional[ConversionCache] = None,
        parent_search: bool = True
    ):
        """
        Args:
            comorbidity_map: Map to classify against
            exclusion_rules: (winner, loser) rules applied in order after
                matching; defaults to the rules declared with the map, pass
                an empty list for none
            catalog: Optional catalog used to break ICD-9/ICD-10 ties when
                guessing unlabelled codes
            cache: ConversionCache for code normalisation
            parent_search: Let an ICD-10 code missing from the map match its
                nearest parent that is in the map ("I5021" matches "I50")
        """
        self.map = comorbidity_map
        rules = comorbidity_map.exclusion_rules if exclusion_rules is None else exclusion_rules
        self.exclusion_rules: Tuple[ExclusionRule, ...] = tuple(
            ExclusionRule.from_value(rule) for rule in rules
        )
        self._positions = {category: i for i, category in enumerate(comorbidity_map.categories)}
        for rule in self.exclusion_rules:
            for category in (rule.winner, rule.loser):
                if category not in self._positions:
                    raise ValueError(
                        f"Exclusion rule {rule} names unknown category '{category}'. "
                        f"Available categories: {list(comorbidity_map.categories)}"
                    )
        self.catalog = catalog
        self.cache = cache
        self.parent_search = parent_search
        self._index = comorbidity_map.index()

        taxonomies = sorted(comorbidity_map.taxonomies, key=lambda t: t.value)
        families = {t.family for t in taxonomies}
        self._map_taxonomy: Optional[Taxonomy] = taxonomies[0] if len(families) == 1 else None

    def _resolve(
        self,
        code: Any,
        tag: Any,
        default_taxonomy: Optional[Taxonomy]
    ) -> Tuple[Tuple[int, ...], Optional[str]]:
        text = str(code).strip()
        composite = parse_composite_code(text)
        if composite:
            text = composite["code"]

        if not _is_missing(tag):
            if isinstance(tag, float) and tag.is_integer():
                tag = int(tag)
            try:
                taxonomy = Taxonomy.parse(tag)
            except UnknownTaxonomyError:
                return (), "unknown_taxonomy"
        elif composite:
            if composite["taxonomy"] is None:
                return (), "unknown_taxonomy"
            taxonomy = composite["taxonomy"]
        elif default_taxonomy is not None:
            taxonomy = default_taxonomy
        else:
            # no hint anywhere: a failed guess is a hard error
            taxonomy = guess_version(text, catalog=self.catalog)

        try:
            short = normalize_short(text, taxonomy, cache=self.cache)
        except MalformedCodeError:
            return (), "malformed"
        categories = self._index.get((taxonomy.family, short), ())
        if not categories and self.parent_search and taxonomy.family == "icd10":
            # ICD-10 maps list codes only to a shallow depth; match the nearest listed parent
            major, minor = taxonomy.scheme.to_parts(short, short_code=True)
            for depth in range(len(minor) - 1, -1, -1):
                categories = self._index.get((taxonomy.family, major + minor[:depth]), ())
                if categories:
                    break
        return categories, (None if categories else "unmatched")

    def classify(
        self,
        records: Any,
        counts: bool = False,
        taxonomy: Optional[Union[str, Taxonomy]] = None,
        visit_order: Optional[Sequence[Any]] = None,
        poa: Optional[str] = None,
        visit_column: str = "visit_id",
        code_column: str = "code",
        taxonomy_column: Optional[str] = "taxonomy",
        poa_column: Optional[str] = "poa"
    ) -> ClassificationResult:
        """
        Classify records into the map's categories.

        Args:
            records: Iterable of VisitCodeRecord / (visit_id, code[, taxonomy[, poa]])
                tuples, or a DataFrame
            counts: Count matching codes instead of flagging presence
            taxonomy: Taxonomy for records that carry no tag of their own;
                defaults to the map's taxonomy when the map has a single family
            visit_order: Explicit row order; visits not listed follow in
                encounter order
            poa: Present-on-admission filter: None, "yes", "no", "not_yes" or "not_no"
            visit_column: Visit id column (DataFrame input)
            code_column: Code column (DataFrame input)
            taxonomy_column: Taxonomy column (DataFrame input), optional
            poa_column: Present-on-admission column (DataFrame input), optional

        Returns:
            ClassificationResult

        Raises:
            VersionGuessError: if a code has no taxonomy hint at all and its
                version cannot be guessed
        """
        frame = _records_frame(records, visit_column, code_column, taxonomy_column, poa_column)
        return self._classify_frame(frame, counts, taxonomy, visit_order, poa)

    def classify_chunked(
        self,
        records: Any,
        chunk_visits: int = 10000,
        show_progress: bool = False,
        counts: bool = False,
        taxonomy: Optional[Union[str, Taxonomy]] = None,
        visit_order: Optional[Sequence[Any]] = None,
        poa: Optional[str] = None,
        visit_column: str = "visit_id",
        code_column: str = "code",
        taxonomy_column: Optional[str] = "taxonomy",
        poa_column: Optional[str] = "poa"
    ) -> ClassificationResult:
        """
        Classify in partitions of ``chunk_visits`` visits.

        Partitions share nothing but the map, so the output is identical to
        ``classify``; this bounds memory and shows progress on large inputs.
        """
        if chunk_visits < 1:
            raise ValueError("chunk_visits must be at least 1")
        frame = _records_frame(records, visit_column, code_column, taxonomy_column, poa_column)
        visits = frame["visit_id"]
        no_visit = visits.isna().to_numpy()

        order = _unique_in_order(visits[~no_visit])
        if visit_order is not None:
            listed = _unique_in_order(visit_order)
            known = set(listed)
            order = listed + [v for v in order if v not in known]

        chunks = [order[i:i + chunk_visits] for i in range(0, len(order), chunk_visits)]
        if not chunks:
            return self._classify_frame(frame, counts, taxonomy, visit_order, poa)

        iterator = tqdm(chunks, desc="Classifying", unit="chunk") if show_progress else chunks
        results = []
        for chunk in iterator:
            part = frame[visits.isin(chunk).to_numpy() & ~no_visit]
            results.append(self._classify_frame(part, counts, taxonomy, chunk, poa))

        summary = results[0].summary
        for result in results[1:]:
            summary = summary.merge(result.summary)
        if no_visit.any():
            # rows without a visit id add to the summary only
            summary = summary.merge(
                self._classify_frame(frame[no_visit], counts, taxonomy, [], poa).summary
            )
        matrix = pd.concat([result.matrix for result in results])
        return ClassificationResult(matrix, summary)

    def _classify_frame(
        self,
        frame: pd.DataFrame,
        counts: bool,
        taxonomy: Optional[Union[str, Taxonomy]],
        visit_order: Optional[Sequence[Any]],
        poa: Optional[str]
    ) -> ClassificationResult:
        frame = frame.reset_index(drop=True)
        n = len(frame)
        default_taxonomy = Taxonomy.parse(taxonomy) if taxonomy is not None else self._map_taxonomy
        reasons = np.full(n, None, dtype=object)

        # rows
        visits = frame["visit_id"]
        active = ~visits.isna().to_numpy()
        reasons[~active] = "missing_visit"
        if visit_order is None:
            row_codes, levels = pd.factorize(visits, sort=False)
            levels = list(levels)
        else:
            listed = _unique_in_order(visit_order)
            known = set(listed)
            levels = listed + [v for v in _unique_in_order(visits[active]) if v not in known]
            row_codes = np.asarray(
                relevel(visits.to_numpy(dtype=object), levels).codes, dtype=np.int64
            )

        # filters
        if poa is not None:
            if poa not in POA_FILTERS:
                raise ValueError(f"poa must be one of {sorted(POA_FILTERS)} or None, got {poa!r}")
            keep = POA_FILTERS[poa](frame["poa"]).to_numpy(dtype=bool)
            reasons[active & ~keep] = "poa_filtered"
            active &= keep

        code_text = frame["code"].astype("string").str.strip()
        no_code = (frame["code"].isna() | code_text.eq("").fillna(True)).to_numpy(dtype=bool)
        reasons[active & no_code] = "missing"
        active &= ~no_code

        # resolve each distinct (code, taxonomy tag) once
        active_idx = np.flatnonzero(active)
        sub = frame.iloc[active_idx]
        tags = sub["taxonomy"].where(sub["taxonomy"].notna(), "")
        keys = sub["code"].astype(str) + "\x1f" + tags.astype(str)
        key_codes, _ = pd.factorize(keys, sort=False)
        key_codes = np.asarray(key_codes, dtype=np.int64)
        first = np.unique(key_codes, return_index=True)[1]
        resolved = [
            self._resolve(code, tag, default_taxonomy)
            for code, tag in zip(
                sub["code"].to_numpy(dtype=object)[first],
                sub["taxonomy"].to_numpy(dtype=object)[first],
            )
        ]

        matrix = np.zeros((len(levels), len(self._positions)), dtype=np.int64)
        if resolved:
            found = [categories for categories, _ in resolved]
            reasons[active_idx] = np.array([reason for _, reason in resolved], dtype=object)[key_codes]

            lens_unique = np.array([len(c) for c in found], dtype=np.int64)
            lens = lens_unique[key_codes]
            total = int(lens.sum())
            if total:
                flat = np.fromiter(itertools.chain.from_iterable(found), dtype=np.int64)
                offsets = np.concatenate([[0], np.cumsum(lens_unique)[:-1]])
                starts = np.repeat(offsets[key_codes], lens)
                within = np.arange(total) - np.repeat(np.cumsum(lens) - lens, lens)
                cols = flat[starts + within]
                rows = np.repeat(np.asarray(row_codes, dtype=np.int64)[active_idx], lens)
                np.add.at(matrix, (rows, cols), 1)

        for rule in self.exclusion_rules:
            present = matrix[:, self._positions[rule.winner]] > 0
            matrix[present, self._positions[rule.loser]] = 0

        index = pd.Index(levels, name="visit_id", dtype=object if not levels else None)
        result_matrix = pd.DataFrame(
            matrix if counts else matrix > 0,
            index=index,
            columns=list(self._positions),
        )
        summary = self._summarize(frame, reasons)
        logger.info(
            f"Classified {n} records for {len(levels)} visits against '{self.map.name}': "
            f"{summary.matched} matched, {summary.unmatched} unmatched, {summary.excluded} excluded"
        )
        return ClassificationResult(result_matrix, summary)

    @staticmethod
    def _summarize(frame: pd.DataFrame, reasons: np.ndarray) -> ClassificationSummary:
        flagged = pd.notna(reasons)
        counts = Counter(reasons[flagged].tolist())
        for reason, n in counts.items():
            logger.debug(f"{n} records skipped: {reason}")
        skipped = frame.loc[flagged, ["visit_id", "code", "taxonomy"]].assign(
            reason=reasons[flagged]
        ).reset_index(drop=True)
        return ClassificationSummary(
            total_records=len(frame),
            matched=int(len(frame) - flagged.sum()),
            counts=dict(counts),
            skipped=skipped,
        )


def classify(
    records: Any,
    comorbidity_map: ComorbidityMap,
    exclusion_rules: Optional[Iterable[Any]] = None,
    catalog: Optional[TaxonomyCatalog] = None,
    cache: Optional[ConversionCache] = None,
    parent_search: bool = True,
    **kwargs
) -> ClassificationResult:
    """
    Classify records against a map; see ``Classifier.classify`` for options.

    Examples:
        >>> result = classify([("v1", "428.0"), ("v2", "199.1")], cmap)
        >>> result.matrix.loc["v1", "CHF"]
        True
    """
    classifier = Classifier(
        comorbidity_map,
        exclusion_rules=exclusion_rules,
        catalog=catalog,
        cache=cache,
        parent_search=parent_search
    )
    return classifier.classify(records, **kwargs)


def classify_chunked(
    records: Any,
    comorbidity_map: ComorbidityMap,
    exclusion_rules: Optional[Iterable[Any]] = None,
    catalog: Optional[TaxonomyCatalog] = None,
    cache: Optional[ConversionCache] = None,
    parent_search: bool = True,
    **kwargs
) -> ClassificationResult:
    """Partitioned ``classify``; see ``Classifier.classify_chunked``."""
    classifier = Classifier(
        comorbidity_map,
        exclusion_rules=exclusion_rules,
        catalog=catalog,
        cache=cache,
        parent_search=parent_search
    )
    return classifier.classify_chunked(records, **kwargs)
