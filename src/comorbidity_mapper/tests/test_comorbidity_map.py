"""
Unit tests for comorbidity map construction.

Run with: python -m pytest test_comorbidity_map.py
"""

import pytest
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from comorbidity_mapper import (
    CodeRange,
    ComorbidityMap,
    ExclusionRule,
    Taxonomy,
    TaxonomyCatalog,
    build_map,
    get_invalid,
    ranges_to_map,
)
from comorbidity_mapper.utils import export_map_to_csv, map_from_csv


@pytest.fixture
def definitions():
    """Category definitions in the loose forms accepted by build_map"""
    return {
        "CHF": [CodeRange("icd9", "428"), ("icd9", "425.4", "425.9")],
        "Diabetes": [("icd9", "250.00", "250.93")],
        "Cancer": [{"taxonomy": "icd9", "start": "196", "end": "199"}],
    }


@pytest.fixture
def sample_map(definitions):
    return build_map(definitions, name="demo")


class TestCodeRange:
    """Test cases for range values"""

    def test_from_value_forms(self):
        assert CodeRange.from_value("428", taxonomy="icd9") == CodeRange(Taxonomy.ICD9, "428")
        assert CodeRange.from_value(("428.0", "428.9"), taxonomy="icd9").end == "428.9"
        assert CodeRange.from_value(("icd10", "I50", "I51", True)).defined is True
        assert CodeRange.from_value({"start": "I50"}, taxonomy="icd10").taxonomy is Taxonomy.ICD10

    def test_str(self):
        assert str(CodeRange("icd9", "428.0", "428.9")) == "icd9: 428.0-428.9"

    def test_bad_value(self):
        with pytest.raises(ValueError):
            CodeRange.from_value(("a", "b", "c", "d", "e"))


class TestBuildMap:
    """Test cases for build_map"""

    def test_categories_in_definition_order(self, sample_map):
        assert sample_map.categories == ("CHF", "Diabetes", "Cancer")
        assert list(sample_map) == ["CHF", "Diabetes", "Cancer"]
        assert len(sample_map) == 3
        assert sample_map.diagnostics == ()

    def test_union_of_ranges(self, sample_map):
        chf = sample_map.codes("CHF")
        assert "4254" in chf and "4259" in chf and "4280" in chf
        assert "4253" not in chf
        assert len(chf) == len(set(chf))

    def test_deterministic(self, definitions):
        first = build_map(definitions, name="demo")
        second = build_map(definitions, name="demo")
        assert first.to_dict() == second.to_dict()
        assert first.fingerprint() == second.fingerprint()
        assert first == second

    def test_inverted_range_does_not_block_siblings(self):
        cmap = build_map({
            "Bad": [("icd9", "500", "100")],
            "CHF": [("icd9", "428")],
        })
        assert cmap["Bad"] == ()
        assert len(cmap["CHF"]) == 111
        assert len(cmap.diagnostics) == 1
        diagnostic = cmap.diagnostics[0]
        assert diagnostic.kind == "inverted_range"
        assert diagnostic.category == "Bad"

    def test_bad_ranges_are_reported_by_kind(self):
        cmap = build_map(
            {
                "Malformed": ["ABC", "428"],
                "Unknown": [("icd11", "A00", "A01")],
                "NoCatalog": [CodeRange("icd9", "250", defined=True)],
            },
            taxonomy="icd9"
        )
        kinds = {d.category: d.kind for d in cmap.diagnostics}
        assert kinds == {
            "Malformed": "malformed",
            "Unknown": "unknown_taxonomy",
            "NoCatalog": "missing_catalog",
        }
        assert len(cmap["Malformed"]) == 111

    def test_undefined_boundary_reported(self):
        catalog = TaxonomyCatalog({"icd9": ["4280", "4281"]})
        cmap = build_map(
            {"CHF": [CodeRange("icd9", "428.0", "428.5", defined=True)]},
            catalog=catalog
        )
        assert cmap.codes("CHF") == ["4280", "4281"]
        assert [(d.kind, d.code) for d in cmap.diagnostics] == [("undefined", "428.5")]

    def test_default_defined_flag(self):
        catalog = TaxonomyCatalog({"icd9": ["4280", "4281"]})
        cmap = build_map({"CHF": ["428"]}, catalog=catalog, taxonomy="icd9", defined=True)
        assert cmap.codes("CHF") == ["4280", "4281"]

    def test_bare_tuple_is_one_range(self):
        cmap = build_map({"DM": ("250.00", "250.93")}, taxonomy="icd9")
        assert "25001" in cmap.codes("DM") and "25050" in cmap.codes("DM")
        assert cmap == build_map({"DM": [("250.00", "250.93")]}, taxonomy="icd9")
        tagged = build_map({"CHF": ("icd9", "428.0", "428.9")})
        assert len(tagged["CHF"]) == 10

    def test_defined_range_keeps_deeper_codes(self):
        catalog = TaxonomyCatalog({"icd9": ["4280", "4281", "42820", "42821", "42830", "4289"]})
        cmap = build_map({"CHF": [("428.0", "428.9")]}, catalog=catalog, taxonomy="icd9", defined=True)
        assert cmap.codes("CHF") == ["4280", "4281", "42820", "42821", "42830", "4289"]
        assert cmap.diagnostics == ()

    def test_exclusivity_conflict_reported(self):
        cmap = build_map(
            {
                "DM_complicated": [("icd9", "250.3", "250.5")],
                "DM_uncomplicated": [("icd9", "250.0", "250.3")],
            },
            exclusion_rules=[("DM_complicated", "DM_uncomplicated")]
        )
        assert [(d.kind, d.code) for d in cmap.diagnostics] == [("exclusivity_conflict", "2503")]
        # still built
        assert "2503" in cmap.codes("DM_complicated")
        assert cmap.exclusion_rules == (ExclusionRule("DM_complicated", "DM_uncomplicated"),)

    def test_rule_with_unknown_category_reported(self):
        cmap = build_map({"A": ["428"]}, exclusion_rules=[("A", "B")], taxonomy="icd9")
        assert [d.kind for d in cmap.diagnostics] == ["exclusivity_conflict"]


class TestComorbidityMap:
    """Test cases for the map interface"""

    def test_getitem(self, sample_map):
        codes = sample_map["Cancer"]
        assert codes[0].value == "196"
        with pytest.raises(KeyError, match="Available categories"):
            sample_map["Missing"]

    def test_contains(self, sample_map):
        assert "CHF" in sample_map
        assert "Missing" not in sample_map

    def test_decimal_codes(self, sample_map):
        assert sample_map.codes("Diabetes", decimal=True)[:2] == ["250.00", "250.01"]

    def test_from_dict_deduplicates(self):
        cmap = ComorbidityMap.from_dict({"CHF": ["428.1", "4280", "428.0"]}, "icd9")
        assert cmap.codes("CHF") == ["4280", "4281"]

    def test_index(self):
        cmap = ComorbidityMap.from_dict({"A": ["4280"], "B": ["4280", "4281"]}, "icd9")
        index = cmap.index()
        assert index[("icd9", "4280")] == (0, 1)
        assert index[("icd9", "4281")] == (1,)

    def test_index_shares_icd10_family(self):
        cmap = ComorbidityMap.from_dict({"CHF": ["I50"]}, "icd10ca")
        assert ("icd10", "I50") in cmap.index()

    def test_diff(self, sample_map):
        other = ComorbidityMap.from_dict(
            {"CHF": sample_map.codes("CHF")[1:], "Other": ["4019"]},
            "icd9"
        )
        differences = sample_map.diff(other)
        assert differences["CHF"] == {"added": [sample_map.codes("CHF")[0]], "removed": []}
        assert differences["Other"] == {"added": [], "removed": ["4019"]}
        assert "Diabetes" in differences
        assert sample_map.diff(sample_map) == {}

    def test_summary(self, sample_map):
        summary = sample_map.summary()
        assert summary["category"].tolist() == ["CHF", "Diabetes", "Cancer"]
        assert summary.loc[2, "n_codes"] == 4 * 111

    def test_equality_and_hash(self, sample_map):
        copy = ComorbidityMap.from_dict(sample_map.to_dict(), "icd9")
        assert copy == sample_map
        assert hash(copy) == hash(sample_map)

    def test_csv_round_trip(self, sample_map, tmp_path):
        path = tmp_path / "demo.csv"
        export_map_to_csv(sample_map, path, decimal=True)
        loaded = map_from_csv(path)
        assert loaded == sample_map
        assert loaded.name == "demo"


class TestHelpers:
    """Test cases for ranges_to_map and get_invalid"""

    def test_ranges_to_map(self):
        chapters = {
            "Circulatory": ("390", "459"),
            "Respiratory": ("460", "519"),
        }
        cmap = ranges_to_map(chapters, "icd9")
        assert cmap.categories == ("Circulatory", "Respiratory")
        assert "4280" in cmap.codes("Circulatory")
        assert "4660" in cmap.codes("Respiratory")

    def test_get_invalid(self):
        cmap = ComorbidityMap.from_dict({"CHF": ["4280", "4289"], "Other": ["4019"]}, "icd9")
        assert get_invalid(cmap) == {}
        catalog = TaxonomyCatalog({"icd9": ["4280", "4019"]})
        assert get_invalid(cmap, catalog) == {"CHF": ["4289"]}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
