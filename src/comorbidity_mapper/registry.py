"""
Registry for managing multiple comorbidity maps.

Keeps named, prebuilt maps (Elixhauser, Charlson, user definitions) and
hands out Classifiers for them. There is no module-level registry: create
one at startup and pass it where it is needed.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging

from .catalog import TaxonomyCatalog
from .classify import ClassificationResult, Classifier
from .comorbidity_map import ComorbidityMap
from .config import build_map_from_config, packaged_maps

logger = logging.getLogger(__name__)


class MapRegistry:
    """
    Centralized registry for managing multiple ComorbidityMaps.

    Usage:
        # Initialize registry
        registry = MapRegistry()

        # Register maps
        registry.register_from_config("elixhauser_icd9")
        registry.register_from_config("my_map", "configs/my_map.yaml")

        # Classify with a registered map
        result = registry.classify("elixhauser_icd9", records)

        # Or get the map directly
        cmap = registry.get_map("elixhauser_icd9")
    """

    def __init__(self, catalog: Optional[TaxonomyCatalog] = None):
        """
        Initialize empty registry.

        Args:
            catalog: Reference tables used when building maps from config
                and when guessing versions during classification
        """
        self.catalog = catalog
        self._maps: Dict[str, ComorbidityMap] = {}
        self._classifiers: Dict[str, Classifier] = {}
        logger.info("Initialized MapRegistry")

    def register(
        self,
        name: str,
        comorbidity_map: ComorbidityMap,
        overwrite: bool = False
    ):
        """
        Register a ComorbidityMap instance.

        Args:
            name: Unique name for this map
            comorbidity_map: ComorbidityMap instance
            overwrite: Whether to overwrite existing map with same name
        """
        if name in self._maps and not overwrite:
            raise ValueError(
                f"Map '{name}' already registered. "
                f"Use overwrite=True to replace."
            )

        self._maps[name] = comorbidity_map
        self._classifiers.pop(name, None)
        logger.info(f"Registered map: {name}")

    def register_from_config(
        self,
        name: str,
        path_or_name: Optional[Union[str, Path]] = None,
        overwrite: bool = False
    ) -> ComorbidityMap:
        """
        Build a map from a YAML definition and register it.

        Args:
            name: Unique name for this map
            path_or_name: YAML file or packaged definition name (default: ``name``)
            overwrite: Whether to overwrite existing map

        Returns:
            The registered ComorbidityMap
        """
        comorbidity_map = build_map_from_config(
            path_or_name if path_or_name is not None else name,
            catalog=self.catalog
        )
        self.register(name, comorbidity_map, overwrite=overwrite)
        return comorbidity_map

    def get_map(self, name: str) -> ComorbidityMap:
        """
        Get a registered map by name.

        Args:
            name: Name of the map

        Returns:
            ComorbidityMap instance
        """
        if name not in self._maps:
            raise KeyError(
                f"Map '{name}' not found. "
                f"Available maps: {self.list_maps()}"
            )

        return self._maps[name]

    def get_classifier(self, name: str) -> Classifier:
        """Classifier for a registered map, created on first use and reused."""
        if name not in self._classifiers:
            self._classifiers[name] = Classifier(self.get_map(name), catalog=self.catalog)
        return self._classifiers[name]

    def classify(self, name: str, records: Any, **kwargs) -> ClassificationResult:
        """
        Classify records with a registered map.

        Args:
            name: Name of the map to use
            records: Records, as accepted by ``Classifier.classify``
            **kwargs: Options for ``Classifier.classify``

        Returns:
            ClassificationResult
        """
        return self.get_classifier(name).classify(records, **kwargs)

    def list_maps(self) -> List[str]:
        """Get list of all registered map names."""
        return list(self._maps.keys())

    def has_map(self, name: str) -> bool:
        """Check if a map is registered."""
        return name in self._maps

    def remove_map(self, name: str):
        """Remove a registered map."""
        if name not in self._maps:
            logger.warning(f"Map '{name}' not found, nothing to remove")
            return

        del self._maps[name]
        self._classifiers.pop(name, None)
        logger.info(f"Removed map: {name}")

    def get_all_diagnostics(self) -> Dict[str, list]:
        """Build diagnostics of every registered map."""
        return {
            name: list(comorbidity_map.diagnostics)
            for name, comorbidity_map in self._maps.items()
        }

    def __len__(self) -> int:
        """Return number of registered maps."""
        return len(self._maps)

    def __contains__(self, name: object) -> bool:
        return name in self._maps

    def __repr__(self) -> str:
        map_info = ", ".join(
            f"{name}({len(comorbidity_map)} categories)"
            for name, comorbidity_map in self._maps.items()
        )
        return f"MapRegistry({map_info})"


def init_default_maps(
    catalog: Optional[TaxonomyCatalog] = None,
    registry: Optional[MapRegistry] = None
) -> MapRegistry:
    """
    Convenience function to register every map shipped with the package.

    Args:
        catalog: Reference tables for the new registry (ignored if
            ``registry`` is given)
        registry: MapRegistry to use (creates new if None)

    Returns:
        MapRegistry with the packaged maps registered
    """
    if registry is None:
        registry = MapRegistry(catalog=catalog)

    for name in packaged_maps():
        registry.register_from_config(name, overwrite=True)
        logger.info(f"Registered packaged map {name}")

    return registry
