"""
Utility functions for records and maps held in DataFrames.
"""

from pathlib import Path
from typing import Dict, Optional, Union
import logging

import pandas as pd

from .classify import Classifier
from .comorbidity_map import ComorbidityMap
from .convert import is_valid
from .taxonomy import Code, Taxonomy

logger = logging.getLogger(__name__)


def validate_records(
    df: pd.DataFrame,
    visit_column: str = "visit_id",
    code_column: str = "code",
    taxonomy: Optional[Union[str, Taxonomy]] = None,
    sample_size: int = 5
) -> Dict:
    """
    Check a records table before classification and return statistics.

    Args:
        df: Long format records, one row per code occurrence
        visit_column: Name of visit id column
        code_column: Name of code column
        taxonomy: If given, also count codes failing its grammar
        sample_size: Number of sample rows to return

    Returns:
        Dictionary with validation results and statistics
    """
    results = {
        "valid": True,
        "total_rows": len(df),
        "columns": df.columns.tolist(),
        "has_visit_column": visit_column in df.columns,
        "has_code_column": code_column in df.columns,
    }

    if not (results["has_visit_column"] and results["has_code_column"]):
        results["valid"] = False
        results["error"] = "Required columns not found"
        return results

    subset = df[[visit_column, code_column]]
    results["null_visits"] = int(subset[visit_column].isnull().sum())
    results["null_codes"] = int(subset[code_column].isnull().sum())
    results["unique_visits"] = int(subset[visit_column].nunique())
    results["unique_codes"] = int(subset[code_column].nunique())
    results["visits_grouped"] = bool(
        (subset[visit_column] != subset[visit_column].shift()).sum() == results["unique_visits"]
    )

    if taxonomy is not None:
        codes = subset[code_column].dropna().astype(str).unique()
        invalid = [code for code in codes if not is_valid(code, taxonomy)]
        results["invalid_codes"] = len(invalid)
        results["invalid_sample"] = invalid[:sample_size]

    results["sample"] = subset.head(sample_size).to_dict(orient="records")
    return results


def find_unmapped_codes(
    df: pd.DataFrame,
    code_column: str,
    comorbidity_map: ComorbidityMap,
    taxonomy: Optional[Union[str, Taxonomy]] = None,
    return_dataframe: bool = True
):
    """
    Find codes in a DataFrame that fall in no category of a map.

    Args:
        df: DataFrame containing codes
        code_column: Name of column with codes
        comorbidity_map: ComorbidityMap to check against
        taxonomy: Taxonomy of the codes (default: the map's, or guessed)
        return_dataframe: If True, return DataFrame of unmapped codes with
            the reason each one was not mapped

    Returns:
        DataFrame with ``unmapped_code`` and ``reason`` columns, or a list of codes
    """
    if code_column not in df.columns:
        raise ValueError(f"Column '{code_column}' not found in DataFrame")

    codes = pd.Series(df[code_column].dropna().unique(), dtype=object)
    records = pd.DataFrame({"visit_id": range(len(codes)), "code": codes})
    result = Classifier(comorbidity_map, exclusion_rules=()).classify(records, taxonomy=taxonomy)
    skipped = result.summary.skipped

    if len(codes):
        logger.info(
            f"Found {len(skipped)} unmapped codes out of "
            f"{len(codes)} unique codes ({len(skipped)/len(codes)*100:.1f}%)"
        )

    if return_dataframe:
        return pd.DataFrame({
            "unmapped_code": skipped["code"].tolist(),
            "reason": skipped["reason"].tolist(),
        })

    return skipped["code"].tolist()


def export_map_to_csv(
    comorbidity_map: ComorbidityMap,
    output_path: Union[str, Path],
    decimal: bool = False,
    delimiter: str = ","
):
    """
    Write a map to CSV in long format: one (category, taxonomy, code) row per code.

    Args:
        comorbidity_map: Map to export
        output_path: Output file path
        decimal: Write decimal instead of short codes
        delimiter: Output delimiter
    """
    rows = [
        {
            "category": category,
            "taxonomy": code.taxonomy.value,
            "code": code.to_decimal().value if decimal else code.value,
        }
        for category in comorbidity_map
        for code in comorbidity_map[category]
    ]
    df = pd.DataFrame(rows, columns=["category", "taxonomy", "code"])
    df.to_csv(output_path, index=False, sep=delimiter)

    logger.info(f"Exported {len(df)} codes of '{comorbidity_map.name}' to {output_path}")


def map_from_csv(
    file_path: Union[str, Path],
    name: Optional[str] = None,
    delimiter: str = ",",
    encoding: str = "utf-8"
) -> ComorbidityMap:
    """
    Load a map written by ``export_map_to_csv`` (or any category/taxonomy/code table).

    Category order follows first appearance in the file.
    """
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"Map file not found: {file_path}")

    df = pd.read_csv(file_path, delimiter=delimiter, encoding=encoding, dtype=str, keep_default_na=False)
    missing = [c for c in ("category", "taxonomy", "code") if c not in df.columns]
    if missing:
        raise ValueError(
            f"Columns {missing} not found. "
            f"Available columns: {df.columns.tolist()}"
        )

    categories: Dict[str, list] = {}
    for category, taxonomy, code in df[["category", "taxonomy", "code"]].itertuples(index=False):
        categories.setdefault(category, []).append(Code.parse(code, taxonomy))

    comorbidity_map = ComorbidityMap(categories, name=name or file_path.stem)
    logger.info(f"Loaded {comorbidity_map!r} from {file_path.name}")
    return comorbidity_map
