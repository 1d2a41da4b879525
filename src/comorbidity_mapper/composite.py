"""
Parsing of composite (MEDS style) code strings.

Event streams often carry codes with their coding system embedded:
- DIAGNOSIS//ICD//9//4280
- DIAGNOSIS//ICD//10//I5021
- DIAGNOSIS//ICD10CA//M1000
- DIAGNOSIS//ICD10CM//E119

These contain:
1. Prefix (e.g., DIAGNOSIS, PROCEDURE)
2. System (e.g., ICD, ICD10CA), optionally followed by a version (9 or 10)
3. Code (the actual medical code)

The system (and version) gives the taxonomy hint for classification.
"""

import re
from typing import Dict, Optional, Tuple

from .errors import UnknownTaxonomyError
from .taxonomy import Taxonomy

# PREFIX//SYSTEM//CODE or PREFIX//SYSTEM//VERSION//CODE
# Example: "DIAGNOSIS//ICD//10//R531"
_COMPOSITE_RE = re.compile(
    r'^\s*(?P<prefix>[A-Za-z_]+)\s*//\s*(?P<system>[^/]+?)\s*'
    r'(?://\s*(?P<version>9|10)\s*)?//\s*(?P<code>[^/]+?)\s*$',
    flags=re.IGNORECASE
)


def parse_composite_code(code_string: str) -> Optional[Dict[str, object]]:
    """
    Parse composite medical code strings.

    Examples:
        >>> parse_composite_code("DIAGNOSIS//ICD//9//4280")["taxonomy"]
        <Taxonomy.ICD9: 'icd9'>

        >>> parse_composite_code("DIAGNOSIS//ICD10CA//M1000")["code"]
        'M1000'

        >>> parse_composite_code("428.0")  # Plain code
        None

    Args:
        code_string: Input code string (may be plain or composite format)

    Returns:
        Dictionary with keys 'prefix', 'system', 'code' and 'taxonomy' if
        composite format detected (taxonomy is None for systems that are not
        ICD), None if input is a plain code
    """
    if not isinstance(code_string, str):
        return None

    match = _COMPOSITE_RE.match(code_string)
    if not match:
        return None

    prefix = match.group('prefix').upper()
    system = match.group('system').upper().strip()
    version = match.group('version')
    code = match.group('code').strip()

    try:
        taxonomy = Taxonomy.parse(f"{system}{version}" if version else system)
    except UnknownTaxonomyError:
        taxonomy = None

    return {
        "prefix": prefix,
        "system": system if not version else f"{system}{version}",
        "code": code,
        "taxonomy": taxonomy,
    }


def is_composite_code(code_string: str) -> bool:
    """Check if a code string is in composite format."""
    return parse_composite_code(code_string) is not None


def split_composite(code_string: str) -> Tuple[Optional[Taxonomy], str]:
    """
    Split a code string into (taxonomy hint, plain code).

    Plain codes come back unchanged with no hint.

    Examples:
        >>> split_composite("DIAGNOSIS//ICD//10//I5021")
        (<Taxonomy.ICD10: 'icd10'>, 'I5021')

        >>> split_composite("I50.21")
        (None, 'I50.21')
    """
    parsed = parse_composite_code(code_string)
    if parsed:
        return parsed['taxonomy'], parsed['code']
    return None, str(code_string).strip()
