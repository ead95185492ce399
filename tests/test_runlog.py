# Copyright (c) Syntropy Systems
"""Tests for the run log and model comparison."""

from pathlib import Path

import pytest

from nmtrack.config import NmtrackConfig
from nmtrack.errors import IntegrityError
from nmtrack.models.model import ModelStatus
from nmtrack.registry import add_tags, copy_model, create_model, remove_tags
from nmtrack.runlog import diff_by_id, model_diff, run_log


class TestRunLog:
    """Tests for run_log."""

    def test_parent_child_delta_ofv(self, temp_dir: Path, finish_run) -> None:  # noqa: ANN001
        """A child's OFV change is measured against its parent."""
        base = create_model(temp_dir, "100", description="base", tags=["base"])
        child = copy_model(base, "101", description="add WT on CL")
        child = remove_tags(child, "base")
        child = add_tags(child, "cov")
        with child.definition_path.open("a") as f:
            _ = f.write("; WT on CL\n")
        finish_run(base, ofv=1000.0)
        finish_run(child, ofv=990.0, thetas=[1.2, 4.8, 52.0, 0.75])

        entries = run_log(temp_dir, config=NmtrackConfig())

        assert [e.id for e in entries] == ["100", "101"]
        first, second = entries
        assert first.status == ModelStatus.FINISHED
        assert first.ofv == pytest.approx(1000.0)
        assert first.n_parameters == 6
        assert first.aic == pytest.approx(1012.0)
        assert first.delta_ofv is None
        assert first.parent_id is None

        assert second.parent_id == "100"
        assert second.delta_ofv == pytest.approx(-10.0)
        assert second.n_parameters == 7
        assert second.aic == pytest.approx(1004.0)
        assert second.definition_changed is True
        assert second.tags_added == ["cov"]
        assert second.tags_removed == ["base"]
        assert second.description == "add WT on CL"

    def test_unrun_models(self, temp_dir: Path) -> None:
        """Models without outputs have no derived values."""
        base = create_model(temp_dir, "100")
        _ = copy_model(base, "101")

        entries = run_log(temp_dir, config=NmtrackConfig())

        for entry in entries:
            assert entry.status == ModelStatus.NOT_SUBMITTED
            assert entry.ofv is None
            assert entry.aic is None
            assert entry.delta_ofv is None
            assert entry.stale is None
        assert entries[1].parent_id == "100"

    def test_parent_without_ofv(self, temp_dir: Path, finish_run) -> None:  # noqa: ANN001
        """A missing parent OFV leaves delta OFV empty, or raises in strict mode."""
        base = create_model(temp_dir, "100")
        child = copy_model(base, "101")
        finish_run(child, ofv=990.0)

        entries = run_log(temp_dir, config=NmtrackConfig())
        assert entries[1].ofv == pytest.approx(990.0)
        assert entries[1].delta_ofv is None

        with pytest.raises(IntegrityError, match="delta OFV"):
            _ = run_log(temp_dir, config=NmtrackConfig(strict_run_log=True))

    def test_missing_parent(self, temp_dir: Path) -> None:
        """A parent that was deleted is tolerated unless strict."""
        base = create_model(temp_dir, "100")
        _ = copy_model(base, "101")
        base.definition_path.unlink()
        base.meta_path.unlink()

        entries = run_log(temp_dir, config=NmtrackConfig())
        assert [e.id for e in entries] == ["101"]
        assert entries[0].parent_id == "100"
        assert entries[0].definition_changed is None

        with pytest.raises(IntegrityError, match="parent 100 not found"):
            _ = run_log(temp_dir, config=NmtrackConfig(strict_run_log=True))

    def test_stale_definition(self, temp_dir: Path, finish_run) -> None:  # noqa: ANN001
        """Editing a definition after submission marks the run stale."""
        record = create_model(temp_dir, "100")
        finish_run(record)

        assert run_log(temp_dir, config=NmtrackConfig())[0].stale is False

        with record.definition_path.open("a") as f:
            _ = f.write("; edited\n")
        assert run_log(temp_dir, config=NmtrackConfig())[0].stale is True

    def test_strict_allows_clean_log(self, temp_dir: Path, finish_run) -> None:  # noqa: ANN001
        """Strict mode does not complain when everything can be computed."""
        base = create_model(temp_dir, "100")
        child = copy_model(base, "101")
        finish_run(base, ofv=1000.0)
        finish_run(child, ofv=1001.5)

        entries = run_log(temp_dir, config=NmtrackConfig(strict_run_log=True))
        assert entries[1].delta_ofv == pytest.approx(1.5)


class TestModelDiff:
    """Tests for model_diff."""

    def test_identical_structure(self, temp_dir: Path, finish_run) -> None:  # noqa: ANN001
        """Models with the same parameters are compared estimate by estimate."""
        base = create_model(temp_dir, "100")
        child = copy_model(base, "101")
        finish_run(base, ofv=1000.0, thetas=[1.0, 5.0, 50.0])
        finish_run(child, ofv=995.0, thetas=[1.0, 4.0, 50.0])

        result = model_diff(base, child)

        assert result.comparable is True
        assert result.reason is None
        assert result.delta_ofv == pytest.approx(-5.0)
        theta2 = next(p for p in result.parameters if p.name == "THETA2")
        assert theta2.change == pytest.approx(-1.0)
        assert theta2.percent_change == pytest.approx(-20.0)
        # $PROBLEM and table file names differ
        assert not result.definitions_identical
        assert result.definition_diff[0].startswith("--- 100.ctl")

    def test_different_parameters(self, temp_dir: Path, finish_run) -> None:  # noqa: ANN001
        """Structurally different models are flagged, not raised."""
        base = create_model(temp_dir, "100")
        child = copy_model(base, "101")
        finish_run(base, ofv=1000.0)
        finish_run(child, ofv=990.0, thetas=[1.2, 4.8, 52.0, 0.75])

        result = diff_by_id(temp_dir, "100", "101")

        assert result.comparable is False
        assert result.reason is not None
        assert "THETA4" in result.reason
        assert result.parameters == []
        assert result.ofv_b == pytest.approx(990.0)

    def test_unrun_model(self, temp_dir: Path, finish_run) -> None:  # noqa: ANN001
        """Without outputs only the definitions are compared."""
        base = create_model(temp_dir, "100")
        other = create_model(temp_dir, "200", definition_text=base.definition_path.read_text())
        finish_run(base)

        result = model_diff(base, other)

        assert result.definitions_identical
        assert result.comparable is None
        assert result.reason == "no estimation output for 200"
