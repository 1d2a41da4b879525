"""
Tests for the comorbidity-mapper command line.

Run with: python -m pytest test_cli.py
"""

import pytest
import pandas as pd
from click.testing import CliRunner
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from comorbidity_mapper.cli import cli


@pytest.fixture
def runner():
    return CliRunner()


class TestCli:
    """Test cases for the CLI commands"""

    def test_convert(self, runner):
        result = runner.invoke(cli, ["convert", "4280", "V1005", "--taxonomy", "icd9"])
        assert result.exit_code == 0
        assert "4280\t428.0" in result.output
        assert "V1005\tV10.05" in result.output

    def test_convert_to_short(self, runner):
        result = runner.invoke(cli, ["convert", "I50.21", "--to", "short"])
        assert result.exit_code == 0
        assert "I50.21\tI5021" in result.output

    def test_convert_malformed(self, runner):
        result = runner.invoke(cli, ["convert", "XYZ", "--taxonomy", "icd9"])
        assert result.exit_code != 0

    def test_expand(self, runner):
        result = runner.invoke(cli, ["expand", "icd9", "428.0", "428.9"])
        assert result.exit_code == 0
        assert "428.0" in result.output and "428.9" in result.output
        assert "10 codes" in result.output

    def test_expand_inverted(self, runner):
        result = runner.invoke(cli, ["expand", "icd9", "500", "100"])
        assert result.exit_code != 0

    def test_build_map(self, runner, tmp_path):
        output = tmp_path / "elixhauser.csv"
        result = runner.invoke(cli, ["build-map", "elixhauser_icd9", "--output", str(output)])
        assert result.exit_code == 0
        assert "fingerprint:" in result.output
        df = pd.read_csv(output, dtype=str)
        assert df.columns.tolist() == ["category", "taxonomy", "code"]
        assert "4280" in df.loc[df["category"] == "CHF", "code"].tolist()

    def test_classify(self, runner, tmp_path):
        records = tmp_path / "records.csv"
        pd.DataFrame({
            "hadm_id": ["v1", "v1", "v2"],
            "icd_code": ["250.00", "250.40", "428.0"],
        }).to_csv(records, index=False)
        output = tmp_path / "out" / "matrix.csv"

        result = runner.invoke(cli, [
            "classify", str(records),
            "--map", "elixhauser_icd9",
            "--output", str(output),
            "--visit-column", "hadm_id",
            "--code-column", "icd_code",
            "--no-progress",
        ])
        assert result.exit_code == 0
        assert "2 visits" in result.output

        matrix = pd.read_csv(output).set_index("hadm_id")
        assert matrix.loc["v1", "DM_complicated"]
        assert not matrix.loc["v1", "DM_uncomplicated"]
        assert matrix.loc["v2", "CHF"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
