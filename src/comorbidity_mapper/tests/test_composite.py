"""
Unit tests for composite code parsing functionality.

Tests parsing of codes with their coding system embedded:
- DIAGNOSIS//ICD//9//4280
- DIAGNOSIS//ICD10CA//M1000
"""

import pytest
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from comorbidity_mapper import Taxonomy
from comorbidity_mapper.composite import (
    parse_composite_code,
    is_composite_code,
    split_composite
)


class TestCompositeCodeParsing:
    """Test cases for composite code parsing"""

    def test_parse_versioned_icd_code(self):
        """Test parsing ICD code with a version component"""
        result = parse_composite_code("DIAGNOSIS//ICD//9//4280")
        assert result is not None
        assert result['prefix'] == 'DIAGNOSIS'
        assert result['system'] == 'ICD9'
        assert result['code'] == '4280'
        assert result['taxonomy'] is Taxonomy.ICD9

    def test_parse_icd10ca_code(self):
        """Test parsing code whose system names the taxonomy"""
        result = parse_composite_code("DIAGNOSIS//ICD10CA//M1000")
        assert result is not None
        assert result['system'] == 'ICD10CA'
        assert result['code'] == 'M1000'
        assert result['taxonomy'] is Taxonomy.ICD10CA

    def test_parse_non_icd_system(self):
        """Test that other coding systems parse without a taxonomy"""
        result = parse_composite_code("PROCEDURE//CCI//1VG52HA")
        assert result is not None
        assert result['code'] == '1VG52HA'
        assert result['taxonomy'] is None

    def test_parse_with_whitespace(self):
        """Test parsing with extra whitespace"""
        result = parse_composite_code("  DIAGNOSIS // ICD10CM // E119  ")
        assert result is not None
        assert result['code'] == 'E119'
        assert result['taxonomy'] is Taxonomy.ICD10CM

    def test_parse_plain_code_returns_none(self):
        """Test that plain codes return None"""
        assert parse_composite_code("M1000") is None
        assert parse_composite_code("428.0") is None

    def test_parse_invalid_format(self):
        """Test invalid formats return None"""
        assert parse_composite_code("DIAGNOSIS/ICD10CA/M1000") is None  # Single slash
        assert parse_composite_code("DIAGNOSIS//M1000") is None  # Missing system
        assert parse_composite_code("//ICD10CA//M1000") is None  # Missing prefix
        assert parse_composite_code("") is None
        assert parse_composite_code(None) is None

    def test_is_composite_code(self):
        """Test is_composite_code helper"""
        assert is_composite_code("DIAGNOSIS//ICD//10//I5021") is True
        assert is_composite_code("I5021") is False

    def test_split_composite(self):
        """Test splitting into taxonomy hint and plain code"""
        assert split_composite("DIAGNOSIS//ICD//10//I5021") == (Taxonomy.ICD10, "I5021")
        assert split_composite(" I50.21 ") == (None, "I50.21")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
