# Copyright (c) Syntropy Systems
"""Tests for reading estimation output."""

from pathlib import Path

import pytest
from conftest import ext_text

from nmtrack.errors import IntegrityError, NotFoundError
from nmtrack.registry import create_model
from nmtrack.summary import model_summary, parse_listing, read_ext, split_tables

LISTING = """\
 NO. OF DATA RECS IN DATA SET:      120
 TOT. NO. OF OBS RECS:       96
 TOT. NO. OF INDIVIDUALS:       24

 #TERM:
 0MINIMIZATION SUCCESSFUL
 NO. OF FUNCTION EVALUATIONS USED:      245
 NO. OF SIG. DIGITS IN FINAL EST.:  3.4

 #TERE:
"""


class TestExtFile:
    """Tests for the .ext parser."""

    def test_split_tables(self) -> None:
        """Each TABLE NO. line starts a new table."""
        text = "TABLE NO.  1: FO\n A B\n 1 2\nTABLE NO.  2: FOCE\n A B\n 3 4\n"
        tables = split_tables(text)
        assert [title for title, _ in tables] == ["TABLE NO.  1: FO", "TABLE NO.  2: FOCE"]
        assert tables[1][1].splitlines() == [" A B", " 3 4"]

    def test_last_table_wins(self, temp_dir: Path) -> None:
        """With several estimation steps the last table is used."""
        path = temp_dir / "run.ext"
        first = ext_text(2000.0, [1.0, 2.0, 3.0]).replace("Estimation with Interaction", "Estimation")
        _ = path.write_text(first + ext_text(1500.0, [1.0, 2.0, 3.0]))

        title, frame = read_ext(path)

        assert "with Interaction" in title
        assert frame.loc[-1000000000, "OBJ"] == pytest.approx(1500.0)

    def test_missing_iteration_column(self, temp_dir: Path) -> None:
        """A table without ITERATION is malformed."""
        path = temp_dir / "bad.ext"
        _ = path.write_text("TABLE NO.  1: FO\n A B\n 1 2\n")
        with pytest.raises(IntegrityError, match="ITERATION"):
            _ = read_ext(path)


class TestModelSummary:
    """Tests for model_summary."""

    def test_summary(self, temp_dir: Path) -> None:
        """Estimates, standard errors, fixed flags and listing facts are combined."""
        record = create_model(temp_dir, "100")
        record.output_dir.mkdir()
        _ = (record.output_dir / "100.ext").write_text(ext_text(1234.5, [1.2, 4.8, 52.0]))
        _ = (record.output_dir / "100.lst").write_text(LISTING)

        summary = model_summary(record)

        assert summary.ofv == pytest.approx(1234.5)
        assert summary.estimation_method == "First Order Conditional Estimation with Interaction"
        names = [p.name for p in summary.parameters]
        # Fixed zero off-diagonal is not a parameter
        assert names == ["THETA1", "THETA2", "THETA3", "OMEGA(1,1)", "OMEGA(2,2)", "SIGMA(1,1)"]
        assert summary.n_estimated == 6
        assert summary.aic == pytest.approx(1234.5 + 12)
        assert summary.covariance_step is True

        theta2 = summary.parameter("THETA2")
        assert theta2 is not None
        assert theta2.estimate == pytest.approx(4.8)
        assert theta2.stderr == pytest.approx(0.48)
        assert theta2.rse == pytest.approx(10.0)

        assert summary.minimization_successful is True
        assert summary.termination_message is not None
        assert "MINIMIZATION SUCCESSFUL" in summary.termination_message
        assert summary.n_subjects == 24
        assert summary.n_observations == 96
        assert summary.n_records == 120

    def test_summary_without_listing(self, temp_dir: Path) -> None:
        """The listing is optional; its facts are left unset."""
        record = create_model(temp_dir, "100")
        record.output_dir.mkdir()
        _ = (record.output_dir / "100.ext").write_text(ext_text(99.0, [1.0]))

        summary = model_summary(record)

        assert summary.ofv == pytest.approx(99.0)
        assert summary.minimization_successful is None
        assert summary.n_subjects is None

    def test_summary_without_ext(self, temp_dir: Path) -> None:
        """No estimates file means no summary."""
        record = create_model(temp_dir, "100")
        with pytest.raises(NotFoundError):
            _ = model_summary(record)

    def test_not_applicable_stderr(self, temp_dir: Path) -> None:
        """Standard errors written as 1E+10 are reported as missing."""
        record = create_model(temp_dir, "100")
        record.output_dir.mkdir()
        text = ext_text(10.0, [1.0]).replace("1.000000E-01", "1.000000E+10", 1)
        _ = (record.output_dir / "100.ext").write_text(text)

        theta1 = model_summary(record).parameter("THETA1")
        assert theta1 is not None
        assert theta1.stderr is None
        assert theta1.rse is None


def test_parse_listing_terminated(temp_dir: Path) -> None:
    """A terminated minimization is reported as unsuccessful."""
    path = temp_dir / "run.lst"
    _ = path.write_text(" #TERM:\n 0MINIMIZATION TERMINATED\n DUE TO ROUNDING ERRORS (ERROR=134)\n\n #TERE:\n")

    facts = parse_listing(path)

    assert facts["minimization_successful"] is False
    assert "ROUNDING ERRORS" in str(facts["termination_message"])
