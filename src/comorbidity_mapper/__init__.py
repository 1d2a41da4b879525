"""
Comorbidity Mapper

Classifies ICD diagnosis codes into comorbidity categories:
- ICD-9-CM (including V and E codes)
- ICD-10 (WHO), ICD-10-CM and ICD-10-CA

Code ranges are expanded into comorbidity maps (Elixhauser ICD-9 and
Charlson ICD-10 ship with the package), which classify visit code records
into a visit x category table.

Works on plain ICD codes or on MEDS composite event codes.
"""

from .catalog import TaxonomyCatalog
from .classify import (
    ClassificationResult,
    ClassificationSummary,
    Classifier,
    VisitCodeRecord,
    classify,
    classify_chunked,
)
from .comorbidity_map import CodeRange, ComorbidityMap, ExclusionRule, build_map, get_invalid, ranges_to_map
from .config import build_map_from_config
from .convert import (
    ConversionCache,
    decimal_to_parts,
    decimal_to_short,
    guess_version,
    is_valid,
    normalize_short,
    relevel,
    short_to_decimal,
    short_to_parts,
)
from .errors import (
    CatalogError,
    ComorbidityMapperError,
    Diagnostic,
    InvertedRangeError,
    MalformedCodeError,
    UndefinedCodeError,
    UnknownTaxonomyError,
    VersionGuessError,
)
from .expand import expand_range, expand_ranges
from .registry import MapRegistry, init_default_maps
from .taxonomy import Code, CodeFormat, Taxonomy

__version__ = "0.1.0"

__all__ = [
    "Taxonomy", "CodeFormat", "Code", "TaxonomyCatalog",
    "short_to_decimal", "decimal_to_short", "normalize_short", "short_to_parts",
    "decimal_to_parts", "guess_version", "is_valid", "relevel", "ConversionCache",
    "expand_range", "expand_ranges",
    "CodeRange", "ExclusionRule", "ComorbidityMap", "build_map", "ranges_to_map",
    "get_invalid", "build_map_from_config",
    "VisitCodeRecord", "ClassificationResult", "ClassificationSummary",
    "Classifier", "classify", "classify_chunked",
    "MapRegistry", "init_default_maps",
    "ComorbidityMapperError", "MalformedCodeError", "UndefinedCodeError",
    "InvertedRangeError", "VersionGuessError", "UnknownTaxonomyError",
    "CatalogError", "Diagnostic",
]
