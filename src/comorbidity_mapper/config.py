"""
Configuration loader for comorbidity maps.

Map definitions live in YAML files: taxonomy, the defined flag,
ordered categories with their code ranges, and exclusion rules. Definitions
shipped with the package are found by name under ``comorbidity_mapper/configs``.
"""

from dataclasses import dataclass, field
from importlib.resources import files
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging

import yaml

from .catalog import TaxonomyCatalog
from .comorbidity_map import CodeRange, ComorbidityMap, ExclusionRule, build_map
from .errors import ComorbidityMapperError, Diagnostic, MalformedCodeError
from .taxonomy import Taxonomy

logger = logging.getLogger(__name__)

PACKAGED_CONFIGS = "comorbidity_mapper.configs"


@dataclass
class MapDefinition:
    """Parsed map configuration, ready for ``build_map``."""
    name: str
    definitions: Dict[str, List[CodeRange]]
    exclusion_rules: List[ExclusionRule] = field(default_factory=list)
    taxonomy: Optional[Taxonomy] = None
    defined: bool = False
    diagnostics: List[Diagnostic] = field(default_factory=list)


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML config file

    Returns:
        Configuration dictionary
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)

    logger.info(f"Loaded configuration from {config_path}")
    return config


def packaged_maps() -> List[str]:
    """Names of the map definitions shipped with the package."""
    root = files(PACKAGED_CONFIGS)
    return sorted(
        entry.name[:-len(".yaml")]
        for entry in root.iterdir()
        if entry.name.endswith(".yaml")
    )


def load_map_config(path_or_name: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a map definition from a file path, or a packaged definition by name.

    Examples:
        >>> load_map_config("elixhauser_icd9")["name"]
        'elixhauser_icd9'
    """
    path = Path(path_or_name)
    if path.exists():
        return load_config(str(path))

    name = str(path_or_name)
    if not name.endswith(".yaml"):
        name += ".yaml"
    resource = files(PACKAGED_CONFIGS) / name
    if not resource.is_file():
        raise FileNotFoundError(
            f"Map config not found: {path_or_name}. "
            f"Packaged maps: {packaged_maps()}"
        )
    config = yaml.safe_load(resource.read_text(encoding="utf-8"))
    logger.info(f"Loaded packaged map config {name}")
    return config


def _code_text(value: Any, category: str) -> str:
    # YAML reads an unquoted 428.0 as a float and loses trailing zeroes
    if isinstance(value, float):
        raise MalformedCodeError(
            f"Category '{category}': code {value!r} was read as a number; quote it in the YAML"
        )
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise MalformedCodeError(f"Category '{category}': cannot read a code from {value!r}")
    return str(value)


def _range_entry(value: Any, category: str, taxonomy: Optional[Taxonomy], defined: bool) -> CodeRange:
    if isinstance(value, dict):
        if value.get("start") is None:
            raise MalformedCodeError(f"Category '{category}': range {value!r} has no start")
        return CodeRange(
            value.get("taxonomy", taxonomy),
            _code_text(value["start"], category),
            _code_text(value["end"], category) if value.get("end") is not None else None,
            bool(value.get("defined", defined)),
        )
    if isinstance(value, (list, tuple)):
        if len(value) not in (1, 2):
            raise MalformedCodeError(f"Category '{category}': a range is [start] or [start, end], got {value!r}")
        codes = [_code_text(v, category) for v in value]
        return CodeRange(taxonomy, codes[0], codes[1] if len(codes) == 2 else None, defined)
    return CodeRange(taxonomy, _code_text(value, category), None, defined)


def parse_map_config(config: Dict[str, Any]) -> MapDefinition:
    """
    Validate a map configuration dictionary.

    Expected layout::

        name: elixhauser_icd9
        taxonomy: icd9
        defined: false
        categories:
          CHF:
            - ["428"]
            - ["425.4", "425.9"]
        exclusion_rules:
          - [DM_complicated, DM_uncomplicated]

    Returns:
        MapDefinition

    Raises:
        ValueError: if the configuration is malformed as a whole; unreadable
            ranges are skipped and recorded in ``diagnostics``
    """
    if not isinstance(config, dict):
        raise ValueError("Map config must be a mapping")
    categories = config.get("categories")
    if not isinstance(categories, dict) or not categories:
        raise ValueError("Map config needs a non-empty 'categories' mapping")

    taxonomy = Taxonomy.parse(config["taxonomy"]) if config.get("taxonomy") else None
    defined = bool(config.get("defined", False))

    definitions = {}
    diagnostics = []
    for category, ranges in categories.items():
        category = str(category)
        if ranges is None:
            ranges = []
        elif not isinstance(ranges, list):
            ranges = [ranges]
        entries = []
        for value in ranges:
            try:
                entries.append(_range_entry(value, category, taxonomy, defined))
            except ComorbidityMapperError as e:
                logger.warning(f"Category '{category}': skipping range {value!r}: {e}")
                diagnostics.append(Diagnostic.from_error(e, category=category, code=repr(value)))
        definitions[category] = entries

    rules = [ExclusionRule.from_value(rule) for rule in config.get("exclusion_rules") or []]

    return MapDefinition(
        name=str(config.get("name", "ComorbidityMap")),
        definitions=definitions,
        exclusion_rules=rules,
        taxonomy=taxonomy,
        defined=defined,
        diagnostics=diagnostics,
    )


def build_map_from_config(
    path_or_name: Union[str, Path, Dict[str, Any]],
    catalog: Optional[TaxonomyCatalog] = None
) -> ComorbidityMap:
    """
    Build a ComorbidityMap from a YAML definition.

    Args:
        path_or_name: Path to a YAML file, name of a packaged definition, or an
            already loaded config dictionary
        catalog: Reference tables for ranges marked ``defined``

    Returns:
        ComorbidityMap
    """
    config = path_or_name if isinstance(path_or_name, dict) else load_map_config(path_or_name)
    definition = parse_map_config(config)
    return build_map(
        definition.definitions,
        catalog=catalog,
        exclusion_rules=definition.exclusion_rules,
        name=definition.name,
        taxonomy=definition.taxonomy,
        defined=definition.defined,
        diagnostics=definition.diagnostics,
    )


# Default configuration template
DEFAULT_CONFIG = """
# Comorbidity map configuration
#
# Quote every code: YAML reads 428.0 as the number 428.

name: my_map
taxonomy: icd9
defined: false

categories:
  CHF:
    - ["398.91"]
    - ["402.01"]
    - ["428"]
  Diabetes:
    - ["250.00", "250.93"]

exclusion_rules: []
"""


def create_default_config(output_path: str):
    """
    Create a default configuration file.

    Args:
        output_path: Path where to save the config file
    """
    output_path = Path(output_path)

    if output_path.exists():
        logger.warning(f"Config file already exists: {output_path}")
        return

    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, 'w', encoding='utf-8') as f:
        f.write(DEFAULT_CONFIG)

    logger.info(f"Created default config at {output_path}")
