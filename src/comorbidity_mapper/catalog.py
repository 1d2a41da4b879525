"""
Reference tables of defined (officially assigned) leaf codes.

A TaxonomyCatalog is built once, from in-memory code lists, a DataFrame or a
file, and is read-only afterwards. It is passed explicitly to range expansion
and map construction; nothing here is cached at module level.
"""

from bisect import bisect_left, bisect_right
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, List, Optional, Tuple, Union
import logging

import pandas as pd

from .errors import CatalogError, ComorbidityMapperError
from .taxonomy import Taxonomy

logger = logging.getLogger(__name__)


class _Table:
    """Sorted, de-duplicated short codes of one taxonomy."""

    __slots__ = ("codes", "majors", "parts", "members", "prefixes")

    def __init__(self, taxonomy: Taxonomy, codes: Iterable[str]):
        scheme = taxonomy.scheme
        keyed = {}
        for code in codes:
            major, minor = scheme.to_parts(code)
            keyed[scheme.join_short(major, minor)] = (scheme.sort_key(major, minor), major, minor)
        ordered = sorted(keyed.items(), key=lambda item: item[1][0])
        self.codes: Tuple[str, ...] = tuple(code for code, _ in ordered)
        self.majors = [key[0] for _, (key, _, _) in ordered]
        self.parts: Tuple[Tuple[str, str], ...] = tuple((major, minor) for _, (_, major, minor) in ordered)
        self.members = frozenset(self.codes)
        self.prefixes = frozenset(
            major + minor[:i]
            for major, minor in self.parts
            for i in range(len(minor) + 1)
        )


class TaxonomyCatalog:
    """
    Read-only reference tables of defined leaf codes, one per taxonomy.

    Usage:
        catalog = TaxonomyCatalog(
            {"icd9": ["4280", "4281", "42820"]},
            edition="2014"
        )
        catalog.is_defined("428.0", "icd9")     # True

        # Or from a file with one code per row
        catalog = TaxonomyCatalog.from_file(
            "data/icd10cm_2019.txt",
            taxonomy="icd10cm",
            code_column="code",
            delimiter="|"
        )
    """

    def __init__(
        self,
        codes: Dict[Union[str, Taxonomy], Iterable[str]],
        edition: Optional[str] = None,
        name: str = "TaxonomyCatalog"
    ):
        """
        Initialize a catalog from code lists.

        Args:
            codes: Mapping of taxonomy tag to defined codes (short or decimal)
            edition: Edition or year label, e.g. "2014"
            name: Name of this catalog
        """
        tables = {}
        for taxonomy, values in codes.items():
            taxonomy = Taxonomy.parse(taxonomy)
            try:
                tables[taxonomy] = _Table(taxonomy, values)
            except ComorbidityMapperError as e:
                raise ValueError(f"Invalid {taxonomy} reference table: {e}") from e
        self._tables = MappingProxyType(tables)
        self.edition = edition
        self.name = name
        logger.info(
            f"Initialized {name} catalog"
            + (f" ({edition})" if edition else "")
            + ": "
            + ", ".join(f"{t}={len(table.codes)}" for t, table in tables.items())
        )

    @classmethod
    def from_dataframe(
        cls,
        df: pd.DataFrame,
        code_column: str = "code",
        taxonomy_column: Optional[str] = "taxonomy",
        taxonomy: Optional[Union[str, Taxonomy]] = None,
        edition: Optional[str] = None,
        name: str = "DataFrameCatalog"
    ) -> "TaxonomyCatalog":
        """
        Create a catalog from a DataFrame.

        Args:
            df: DataFrame with one defined code per row
            code_column: Name of code column
            taxonomy_column: Name of taxonomy column (ignored if ``taxonomy`` is given)
            taxonomy: Taxonomy of every row
            edition: Edition label
            name: Name for this catalog

        Returns:
            TaxonomyCatalog instance
        """
        if code_column not in df.columns:
            raise ValueError(
                f"Code column '{code_column}' not found. "
                f"Available columns: {df.columns.tolist()}"
            )
        if taxonomy is None and (taxonomy_column is None or taxonomy_column not in df.columns):
            raise ValueError(
                f"Taxonomy column '{taxonomy_column}' not found and no taxonomy given. "
                f"Available columns: {df.columns.tolist()}"
            )

        df = df.dropna(subset=[code_column])
        codes = df[code_column].astype(str).str.strip()
        if taxonomy is not None:
            return cls({taxonomy: codes.tolist()}, edition=edition, name=name)

        grouped: Dict[str, List[str]] = {}
        for tag, group in codes.groupby(df[taxonomy_column].astype(str), sort=False):
            grouped[tag] = group.tolist()
        return cls(grouped, edition=edition, name=name)

    @classmethod
    def from_file(
        cls,
        file_path: Union[str, Path],
        code_column: str = "code",
        taxonomy_column: Optional[str] = "taxonomy",
        taxonomy: Optional[Union[str, Taxonomy]] = None,
        delimiter: str = ",",
        encoding: str = "utf-8",
        edition: Optional[str] = None,
        name: Optional[str] = None,
        **read_csv_kwargs
    ) -> "TaxonomyCatalog":
        """
        Load a catalog from a CSV/TXT file.

        Codes are read as strings so leading zeroes survive.

        Args:
            file_path: Path to the reference file
            code_column: Name of the column containing codes
            taxonomy_column: Name of the column holding taxonomy tags
            taxonomy: Taxonomy of every row, instead of a taxonomy column
            delimiter: File delimiter (default: ',')
            encoding: File encoding (default: 'utf-8')
            edition: Edition label
            name: Name for this catalog (defaults to filename)
            **read_csv_kwargs: Additional arguments for pd.read_csv

        Returns:
            TaxonomyCatalog instance
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise FileNotFoundError(f"Reference file not found: {file_path}")

        df = pd.read_csv(
            file_path,
            delimiter=delimiter,
            encoding=encoding,
            dtype=str,
            keep_default_na=False,
            na_values=[""],
            **read_csv_kwargs
        )

        logger.info(f"Loaded {len(df)} reference rows from {file_path.name}")

        return cls.from_dataframe(
            df,
            code_column=code_column,
            taxonomy_column=taxonomy_column,
            taxonomy=taxonomy,
            edition=edition,
            name=name or file_path.stem
        )

    def _table(self, taxonomy: Union[str, Taxonomy]) -> _Table:
        taxonomy = Taxonomy.parse(taxonomy)
        if taxonomy not in self._tables:
            raise CatalogError(
                f"Catalog '{self.name}' has no {taxonomy} table. "
                f"Available: {[str(t) for t in self._tables]}"
            )
        return self._tables[taxonomy]

    @property
    def taxonomies(self) -> Tuple[Taxonomy, ...]:
        return tuple(self._tables)

    def has_taxonomy(self, taxonomy: Union[str, Taxonomy]) -> bool:
        return Taxonomy.parse(taxonomy) in self._tables

    def codes(self, taxonomy: Union[str, Taxonomy]) -> Tuple[str, ...]:
        """All defined short codes of a taxonomy, in taxonomy order."""
        return self._table(taxonomy).codes

    def is_defined(self, code: str, taxonomy: Union[str, Taxonomy]) -> bool:
        """
        Check whether a code (short or decimal) is a defined leaf code.

        Malformed codes are simply not defined.
        """
        taxonomy = Taxonomy.parse(taxonomy)
        table = self._table(taxonomy)
        try:
            short = taxonomy.scheme.to_short(code)
        except ComorbidityMapperError:
            return False
        return short in table.members

    def has_descendants(self, code: str, taxonomy: Union[str, Taxonomy]) -> bool:
        """True if the code is defined or is the parent of a defined code."""
        taxonomy = Taxonomy.parse(taxonomy)
        table = self._table(taxonomy)
        try:
            short = taxonomy.scheme.to_short(code)
        except ComorbidityMapperError:
            return False
        return short in table.prefixes

    def parts_between(
        self,
        taxonomy: Union[str, Taxonomy],
        low_major_key,
        high_major_key
    ) -> Tuple[Tuple[str, str], ...]:
        """(major, minor) of defined codes whose major key lies in [low, high]."""
        table = self._table(taxonomy)
        lo = bisect_left(table.majors, low_major_key)
        hi = bisect_right(table.majors, high_major_key)
        return table.parts[lo:hi]

    def __contains__(self, taxonomy) -> bool:
        try:
            return self.has_taxonomy(taxonomy)
        except ComorbidityMapperError:
            return False

    def __len__(self) -> int:
        return sum(len(table.codes) for table in self._tables.values())

    def __repr__(self) -> str:
        tables = ", ".join(f"{t}({len(table.codes)} codes)" for t, table in self._tables.items())
        return f"TaxonomyCatalog(name='{self.name}', edition={self.edition!r}, {tables})"
