"""
Unit tests for the code model and format conversion.

Run with: python -m pytest test_convert.py
"""

from concurrent.futures import ThreadPoolExecutor

import pytest
import pandas as pd
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from comorbidity_mapper import (
    Code,
    CodeFormat,
    ConversionCache,
    MalformedCodeError,
    Taxonomy,
    TaxonomyCatalog,
    UnknownTaxonomyError,
    VersionGuessError,
    decimal_to_parts,
    decimal_to_short,
    guess_version,
    is_valid,
    normalize_short,
    relevel,
    short_to_decimal,
    short_to_parts,
)


ICD9_SHORT = ["4280", "42820", "0010", "001", "V1005", "V01", "E9501", "E000", "25000"]
ICD10_SHORT = ["I5021", "I50", "E119", "C4A10", "Z9981", "S72001A"]


class TestTaxonomy:
    """Test cases for taxonomy tags"""

    def test_parse_aliases(self):
        """Test the many spellings of a taxonomy"""
        assert Taxonomy.parse("icd9") is Taxonomy.ICD9
        assert Taxonomy.parse("ICD-9-CM") is Taxonomy.ICD9
        assert Taxonomy.parse(9) is Taxonomy.ICD9
        assert Taxonomy.parse("10") is Taxonomy.ICD10
        assert Taxonomy.parse("ICD-10-CA") is Taxonomy.ICD10CA
        assert Taxonomy.parse(Taxonomy.ICD10CM) is Taxonomy.ICD10CM

    def test_parse_unknown(self):
        """Test unknown tags raise"""
        with pytest.raises(UnknownTaxonomyError):
            Taxonomy.parse("icd11")
        with pytest.raises(KeyError):
            Taxonomy.parse("snomed")

    def test_family(self):
        assert Taxonomy.ICD9.family == "icd9"
        assert Taxonomy.ICD10CA.family == "icd10"


class TestCode:
    """Test cases for the Code value type"""

    def test_parse_decimal(self):
        """Test parsing keeps the input format"""
        code = Code.parse("428.0", "icd9")
        assert code.value == "428.0"
        assert code.format is CodeFormat.DECIMAL
        assert code.to_short() == Code("4280", Taxonomy.ICD9, CodeFormat.SHORT)

    def test_parse_pads_major(self):
        """Test short majors are zero padded"""
        assert Code.parse("1", "icd9").value == "001"
        assert Code.parse("V1", "icd9").value == "V01"
        assert Code.parse("E1", "icd9").value == "E001"

    def test_parts(self):
        assert Code.parse("V1005", "icd9").parts() == ("V10", "05")
        assert Code.parse("E950.1", "icd9").parts() == ("E950", "1")
        assert Code.parse("I50.21", "icd10").parts() == ("I50", "21")

    def test_malformed(self):
        """Test invalid codes raise MalformedCodeError"""
        for bad in ["ABC", "4280000", "E950.12", "V1.234", ""]:
            with pytest.raises(MalformedCodeError):
                Code.parse(bad, "icd9")
        with pytest.raises(MalformedCodeError):
            Code.parse("150.21", "icd10")

    def test_icd9_order(self):
        """Test numeric < V < E major order"""
        codes = ["E000", "V01", "999", "0010", "V91", "001"]
        ordered = sorted(codes, key=lambda c: Code.parse(c, "icd9").sort_key())
        assert ordered == ["001", "0010", "999", "V01", "V91", "E000"]

    def test_minor_order_is_hierarchical(self):
        codes = ["4281", "42801", "428", "4280", "42800"]
        ordered = sorted(codes, key=lambda c: Code.parse(c, "icd9").sort_key())
        assert ordered == ["428", "4280", "42800", "42801", "4281"]

    def test_lettered_icd10_majors_follow_their_neighbour(self):
        """Test C4A files between C43 and C44, M1A between M10 and M11"""
        codes = ["C44", "M11", "C4A0", "M1A", "C43", "M10", "C449"]
        ordered = sorted(codes, key=lambda c: Code.parse(c, "icd10cm").sort_key())
        assert ordered == ["C43", "C4A0", "C44", "C449", "M10", "M1A", "M11"]


class TestConversion:
    """Test cases for short/decimal conversion"""

    def test_short_to_decimal(self):
        assert short_to_decimal("4280", "icd9") == "428.0"
        assert short_to_decimal("V1005", "icd9") == "V10.05"
        assert short_to_decimal("E9501", "icd9") == "E950.1"
        assert short_to_decimal("428", "icd9") == "428"
        assert short_to_decimal("I5021", "icd10") == "I50.21"

    def test_decimal_to_short(self):
        """Test decimal to short adds missing leading zeroes"""
        assert decimal_to_short("428.0", "icd9") == "4280"
        assert decimal_to_short("1.2", "icd9") == "0012"
        assert decimal_to_short("V1.5", "icd9") == "V015"
        assert decimal_to_short("I50.21", "icd10cm") == "I5021"

    def test_round_trip_short(self):
        """Test short -> decimal -> short is the identity"""
        for code in ICD9_SHORT:
            assert decimal_to_short(short_to_decimal(code, "icd9"), "icd9") == code
        for code in ICD10_SHORT:
            assert decimal_to_short(short_to_decimal(code, "icd10"), "icd10") == code

    def test_round_trip_decimal(self):
        """Test canonical decimal -> short -> decimal is the identity"""
        for code in ["428.0", "V10.05", "E950.1", "001", "250.00"]:
            assert short_to_decimal(decimal_to_short(code, "icd9"), "icd9") == code

    def test_normalize_short(self):
        assert normalize_short("428.0", "icd9") == "4280"
        assert normalize_short(" 4280 ", "icd9") == "4280"
        assert normalize_short("i50.21", "icd10") == "I5021"

    def test_guessed_taxonomy(self):
        """Test conversion without a tag guesses per value"""
        assert short_to_decimal(["4280", "I5021"]) == ["428.0", "I50.21"]

    def test_parts(self):
        assert short_to_parts("4280", "icd9") == ("428", "0")
        assert decimal_to_parts("V10.05", "icd9") == ("V10", "05")
        assert short_to_parts(["I5021", "I50"], "icd10") == [("I50", "21"), ("I50", "")]

    def test_parts_series(self):
        """Test Series input gives a major/minor DataFrame"""
        result = short_to_parts(pd.Series(["4280", None, "V1005"]), "icd9")
        assert list(result.columns) == ["major", "minor"]
        assert result.loc[0].tolist() == ["428", "0"]
        assert result.loc[2].tolist() == ["V10", "05"]

    def test_code_input(self):
        """Test Code values convert to Code values"""
        code = Code.parse("4280", "icd9")
        assert short_to_decimal(code) == Code("428.0", Taxonomy.ICD9, CodeFormat.DECIMAL)
        with pytest.raises(MalformedCodeError):
            decimal_to_short(code)

    def test_errors_raise_and_coerce(self):
        with pytest.raises(MalformedCodeError):
            short_to_decimal(["4280", "XYZ"], "icd9")
        assert short_to_decimal(["4280", "XYZ"], "icd9", errors="coerce") == ["428.0", None]
        with pytest.raises(ValueError):
            short_to_decimal("4280", "icd9", errors="ignore")

    def test_missing_values_pass_through(self):
        assert short_to_decimal(None, "icd9") is None
        assert short_to_decimal(["4280", None], "icd9") == ["428.0", None]

    def test_is_valid(self):
        assert is_valid("428.0", "icd9")
        assert is_valid("I50.21", "icd10")
        assert not is_valid("ABC", "icd9")
        assert not is_valid("4280", "icd10")


class TestBulkConversion:
    """Test cases for Series / Categorical input and the conversion cache"""

    def test_series_converts_unique_values_once(self):
        cache = ConversionCache()
        series = pd.Series(["4280", "4280", "4281", "4280"], index=[10, 11, 12, 13])
        result = short_to_decimal(series, "icd9", cache=cache)

        assert result.tolist() == ["428.0", "428.0", "428.1", "428.0"]
        assert result.index.tolist() == [10, 11, 12, 13]
        stats = cache.get_stats()
        assert stats["lookups"] == 2
        assert stats["misses"] == 2

        short_to_decimal(series, "icd9", cache=cache)
        assert cache.get_stats()["hits"] == 2

    def test_cache_keeps_failures(self):
        cache = ConversionCache()
        for _ in range(3):
            with pytest.raises(MalformedCodeError):
                short_to_decimal("XYZ", "icd9", cache=cache)
        assert cache.get_stats()["misses"] == 1
        assert len(cache) == 1

    def test_cache_max_size(self):
        cache = ConversionCache(max_size=2)
        short_to_decimal(["4280", "4281", "4282"], "icd9", cache=cache)
        assert len(cache) <= 2
        cache.clear()
        assert len(cache) == 0
        assert cache.get_stats()["lookups"] == 0

    def test_cache_counts_under_threads(self):
        """Test shared cache statistics stay consistent across worker threads"""
        cache = ConversionCache()
        batches = [[f"{n:03d}{m}" for n in range(100, 120) for m in range(10)]] * 16

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda batch: short_to_decimal(batch, "icd9", cache=cache), batches))

        assert all(r == results[0] for r in results)
        stats = cache.get_stats()
        assert stats["lookups"] == 16 * 200
        assert stats["hits"] + stats["misses"] == stats["lookups"]
        assert len(cache) == 200

    def test_categorical_converts_levels(self):
        values = pd.Categorical(["4280", "4281", "4280"])
        result = short_to_decimal(values, "icd9")
        assert isinstance(result, pd.Categorical)
        assert list(result.categories) == ["428.0", "428.1"]
        assert result.tolist() == ["428.0", "428.1", "428.0"]

    def test_categorical_merges_collapsed_levels(self):
        """Test levels that convert to the same code are merged"""
        values = pd.Categorical(["428.0", "4280", "4281"])
        result = normalize_short(values, "icd9")
        assert list(result.categories) == ["4280", "4281"]
        assert result.tolist() == ["4280", "4280", "4281"]

    def test_categorical_series(self):
        series = pd.Series(pd.Categorical(["V1005", "V1005"]), name="dx")
        result = short_to_decimal(series, "icd9")
        assert result.name == "dx"
        assert result.tolist() == ["V10.05", "V10.05"]


class TestGuessVersion:
    """Test cases for guessing ICD versions"""

    def test_numeric_is_icd9(self):
        assert guess_version("4280") is Taxonomy.ICD9
        assert guess_version("428.0") is Taxonomy.ICD9

    def test_letters_are_icd10(self):
        assert guess_version("I5021") is Taxonomy.ICD10
        assert guess_version("A00.0") is Taxonomy.ICD10

    def test_non_canonical_ve_codes_are_icd10(self):
        """Test V/E codes not at full ICD-9 width are ICD-10"""
        assert guess_version("E11.9") is Taxonomy.ICD10
        assert guess_version("E10.1") is Taxonomy.ICD10

    def test_only_icd9_grammar(self):
        assert guess_version("E950.1") is Taxonomy.ICD9

    def test_ambiguous_raises(self):
        with pytest.raises(VersionGuessError):
            guess_version("V1005")

    def test_catalog_breaks_tie(self):
        catalog = TaxonomyCatalog({"icd9": ["V1005"], "icd10": ["V1000"]})
        assert guess_version("V1005", catalog=catalog) is Taxonomy.ICD9
        assert guess_version("V1000", catalog=catalog) is Taxonomy.ICD10

    def test_no_grammar_raises(self):
        with pytest.raises(VersionGuessError):
            guess_version("XYZ")
        with pytest.raises(VersionGuessError):
            guess_version(42)


class TestRelevel:
    """Test cases for re-levelling categorical data"""

    def test_values_outside_levels_become_missing(self):
        result = relevel(pd.Categorical(["a", "b", None]), ["b", "c"])
        assert list(result.categories) == ["b", "c"]
        assert pd.isna(result[0])
        assert result[1] == "b"
        assert pd.isna(result[2])

    def test_na_level(self):
        """Test missing and dropped values go to the explicit level"""
        result = relevel(pd.Categorical(["a", "b", None]), ["b"], na_level="NA")
        assert result.tolist() == ["NA", "b", "NA"]
        assert list(result.categories) == ["b", "NA"]

    def test_reorders_codes(self):
        result = relevel(pd.Categorical(["x", "y", "x"]), ["y", "x"])
        assert result.codes.tolist() == [1, 0, 1]

    def test_plain_sequence(self):
        result = relevel(["4280", "bad", "4281"], ["4280", "4281", "4280"])
        assert list(result.categories) == ["4280", "4281"]
        assert result.codes.tolist() == [0, -1, 1]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
