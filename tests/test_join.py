# Copyright (c) Syntropy Systems
"""Tests for joining output tables back to the input dataset."""

from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest

from nmtrack.errors import IntegrityError, NotFoundError
from nmtrack.models.model import ModelRecord
from nmtrack.registry import create_model
from nmtrack.report.join import data_path_from_definition, nm_join, read_table, table_paths


def write_tables(record: ModelRecord, nums: list[int] | None = None) -> None:
    """Write a row table over nums and a FIRSTONLY parameter table."""
    nums = nums if nums is not None else list(range(1, 17))
    record.output_dir.mkdir(parents=True, exist_ok=True)
    lines = ["TABLE NO.  1", " NUM ID TIME DV PRED CWRES"]
    for num in nums:
        subject = (num - 1) // 4 + 1
        lines.append(f" {num:.4E} {subject:.4E} 0.0 1.0 {num * 0.5:.4E} 0.1")
    _ = (record.output_dir / f"{record.id}.tab").write_text("\n".join(lines) + "\n")

    par = ["TABLE NO.  2", " NUM ID ETA1 ETA2"]
    for subject in range(1, 5):
        par.append(f" {(subject - 1) * 4 + 1} {subject} {subject * 0.1:.4f} {-subject * 0.05:.4f}")
    _ = (record.output_dir / f"{record.id}par.tab").write_text("\n".join(par) + "\n")


@pytest.fixture
def record(model_dir: Path) -> ModelRecord:
    return create_model(model_dir, "100")


class TestReadTable:
    """Tests for the NONMEM table reader."""

    def test_repeated_headers(self, temp_dir: Path) -> None:
        """Tables written per subproblem are concatenated."""
        path = temp_dir / "sim.tab"
        _ = path.write_text("TABLE NO.  1\n NUM DV\n 1 2.0\n 2 3.0\nTABLE NO.  1\n NUM DV\n 1 2.5\n 2 3.5\n")

        frame = read_table(path)

        assert list(frame.columns) == ["NUM", "DV"]
        assert frame["DV"].tolist() == [2.0, 3.0, 2.5, 3.5]

    def test_notitle(self, temp_dir: Path) -> None:
        """Tables without a TABLE NO. line are read as a single block."""
        path = temp_dir / "plain.tab"
        _ = path.write_text(" NUM DV\n 1 2.0\n")
        assert read_table(path)["NUM"].tolist() == [1]

    def test_missing(self, temp_dir: Path) -> None:
        with pytest.raises(NotFoundError):
            _ = read_table(temp_dir / "none.tab")


class TestNmJoin:
    """Tests for nm_join."""

    def test_join(self, record: ModelRecord) -> None:
        """Input columns, row table columns and per-subject columns line up."""
        write_tables(record)

        joined = nm_join(record)

        assert len(joined) == 16
        assert joined.join_key == "NUM"
        columns = list(joined.data.columns)
        # Columns already in the input are not repeated
        assert columns.count("DV") == 1
        assert columns.count("ID") == 1
        for column in ("WT", "SEX", "EVID", "PRED", "CWRES", "ETA1", "ETA2"):
            assert column in columns
        row = joined.data.loc[joined.data["NUM"] == 6].iloc[0]
        assert row["ID"] == 2
        assert row["PRED"] == pytest.approx(3.0)
        assert row["ETA1"] == pytest.approx(0.2)
        assert row["WT"] == 70

    def test_order_follows_table(self, record: ModelRecord) -> None:
        """Rows come out in output table order."""
        write_tables(record, nums=list(range(16, 0, -1)))

        joined = nm_join(record)

        assert joined.data["NUM"].tolist() == list(range(16, 0, -1))

    def test_deterministic(self, record: ModelRecord) -> None:
        """Joining twice gives identical frames."""
        write_tables(record)
        pd.testing.assert_frame_equal(nm_join(record).data, nm_join(record).data)

    def test_unmatched_index(self, record: ModelRecord) -> None:
        """An output row with no input row is an integrity error naming it."""
        write_tables(record, nums=[*range(1, 17), 101])

        with pytest.raises(IntegrityError) as excinfo:
            _ = nm_join(record)

        message = str(excinfo.value)
        assert "101" in message
        assert "1 of 17" in message

    def test_duplicate_index(self, record: ModelRecord) -> None:
        """Repeated indices in an output table are rejected."""
        write_tables(record, nums=[1, 2, 2, 3])
        with pytest.raises(IntegrityError, match="duplicated NUM"):
            _ = nm_join(record)

    def test_subset_of_rows(self, record: ModelRecord) -> None:
        """Output tables may cover only some input rows (e.g. observations)."""
        write_tables(record, nums=[2, 3, 4, 6, 7, 8])
        joined = nm_join(record)
        assert joined.data["NUM"].tolist() == [2, 3, 4, 6, 7, 8]
        assert (joined.data["EVID"] == 0).all()

    def test_same_length_table_with_other_rows(self, record: ModelRecord) -> None:
        """A table as long as the main one must cover the same rows."""
        write_tables(record, nums=list(range(1, 9)))
        other = record.output_dir / "extra.tab"
        lines = ["TABLE NO.  3", " NUM ID IPRED"]
        lines += [f" {num} {(num - 1) // 4 + 1} 0.5" for num in range(9, 17)]
        _ = other.write_text("\n".join(lines) + "\n")

        with pytest.raises(IntegrityError, match=r"8 of 8 row\(s\) have no matching NUM in main table 100.tab"):
            _ = nm_join(record, tables=[record.output_dir / "100.tab", other])

    def test_missing_key_column(self, record: ModelRecord, nmtrack_project: Path) -> None:
        """The input dataset must carry the join key."""
        write_tables(record)
        data = nmtrack_project / "data" / "nokey.csv"
        _ = data.write_text("ID,TIME,DV\n1,0,1\n")
        with pytest.raises(IntegrityError, match="no NUM column"):
            _ = nm_join(record, data_path=data)

    def test_other_key(self, record: ModelRecord, nmtrack_project: Path) -> None:
        """A different key column can be used."""
        record.output_dir.mkdir()
        _ = (record.output_dir / "100.tab").write_text("TABLE NO.  1\n ROW IPRED\n 2 1.5\n 1 0.5\n")
        data = nmtrack_project / "data" / "rows.csv"
        _ = data.write_text("ROW,ID,DV\n1,1,0.4\n2,1,1.6\n")

        joined = nm_join(record, data_path=data, join_key="ROW")

        assert joined.data["ROW"].tolist() == [2, 1]
        assert joined.data["DV"].tolist() == [1.6, 0.4]

    def test_no_tables(self, record: ModelRecord) -> None:
        """A model without output tables cannot be joined."""
        record.output_dir.mkdir()
        with pytest.raises(NotFoundError, match="no output tables"):
            _ = nm_join(record)


class TestJoinedDataset:
    """Tests for the views on a joined dataset."""

    def test_observations_and_baseline(self, record: ModelRecord) -> None:
        write_tables(record)
        joined = nm_join(record)

        assert len(joined.observations()) == 12
        baseline = joined.baseline()
        assert baseline["ID"].tolist() == [1, 2, 3, 4]
        assert baseline["NUM"].tolist() == [1, 5, 9, 13]


def test_data_path_from_definition(record: ModelRecord, nmtrack_project: Path) -> None:
    """$DATA is resolved relative to the model directory."""
    assert data_path_from_definition(record) == nmtrack_project / "data" / "analysis.csv"


def test_table_paths(record: ModelRecord) -> None:
    """Tables named in $TABLE records are found in the output directory."""
    write_tables(record)
    names = [p.name for p in table_paths(record)]
    assert names == ["100.tab", "100par.tab"]
