# Copyright (c) Syntropy Systems
"""Pytest fixtures for nmtrack tests."""

from __future__ import annotations

import os
import sqlite3
import sys
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path

import pytest
import yaml

# Store original cwd at module load time
_original_cwd = Path.cwd()

EXT_HEADER = (
    "TABLE NO.     1: First Order Conditional Estimation with Interaction: "
    "Goal Function=MINIMUM VALUE OF OBJECTIVE FUNCTION: Problem=1 Subproblem=0\n"
)

# Stands in for nmfe: called as `fake_nmfe.py X.ctl X.lst` from the output
# directory. Markers in the control stream steer it:
#   ; FAKE:FAIL         write to stderr and exit 2
#   ; FAKE:SLEEP=<s>    sleep before writing output
#   ; FAKE:OFV=<v>      objective function value
#   ; FAKE:EXTRA_THETA  estimate a fourth THETA
FAKE_NMFE = r'''
import csv
import re
import sys
import time
from pathlib import Path

ctl_name, lst_name = sys.argv[1], sys.argv[2]
stem = Path(ctl_name).stem
text = Path(ctl_name).read_text()

def marker(name, default=None):
    match = re.search(r";\s*FAKE:" + name + r"(?:=(\S+))?", text)
    if match is None:
        return default
    return match.group(1) or True

sleep = marker("SLEEP")
if sleep:
    time.sleep(float(sleep))

print("Starting fake estimation for " + stem)
if marker("FAIL"):
    sys.stderr.write("AN ERROR WAS FOUND IN THE CONTROL STATEMENTS.\n")
    sys.exit(2)

ofv = float(marker("OFV", "1000.0"))
names = ["THETA1", "THETA2", "THETA3"]
final = [1.2, 4.8, 52.0]
se = [0.1, 0.4, 3.0]
if marker("EXTRA_THETA"):
    names.append("THETA4")
    final.append(0.75)
    se.append(0.05)
names += ["OMEGA(1,1)", "OMEGA(2,1)", "OMEGA(2,2)", "SIGMA(1,1)"]
final += [0.09, 0.0, 0.12, 0.04]
se += [0.02, 1.0e10, 0.03, 0.005]
fixed = [0] * (len(names) - 4) + [0, 1, 0, 0]

def row(iteration, values, obj):
    cells = [str(iteration)] + ["%.6E" % v for v in values] + ["%.6E" % obj]
    return " " + "  ".join(cells)

with open(stem + ".ext", "w") as f:
    f.write("TABLE NO.     1: First Order Conditional Estimation with Interaction: "
            "Goal Function=MINIMUM VALUE OF OBJECTIVE FUNCTION: Problem=1 Subproblem=0\n")
    f.write(" ITERATION  " + "  ".join(names) + "  OBJ\n")
    f.write(row(0, [v * 1.1 for v in final], ofv + 50.0) + "\n")
    f.write(row(-1000000000, final, ofv) + "\n")
    f.write(row(-1000000001, se, 0.0) + "\n")
    f.write(row(-1000000006, fixed, 0.0) + "\n")

data_match = re.search(r"^\s*\$DATA\s+(\S+)", text, re.MULTILINE)
data_path = Path(data_match.group(1))
if not data_path.exists():
    data_path = Path("..") / data_path
with open(data_path) as f:
    rows = list(csv.DictReader(f))

def num(value):
    return float(value) if value not in ("", ".") else 0.0

n_obs = 0
with open(stem + ".tab", "w") as f:
    f.write("TABLE NO.  1\n")
    f.write(" NUM ID TIME DV PRED IPRED CWRES NPDE\n")
    for r in rows:
        dv = num(r["DV"])
        if r["MDV"] == "0":
            n_obs += 1
        k = int(r["NUM"])
        f.write(" %d %d %.4f %.4f %.4f %.4f %.4f %.4f\n" % (
            k, int(r["ID"]), num(r["TIME"]), dv, dv * 0.9 + 0.1, dv * 0.97,
            ((k % 5) - 2) * 0.4, ((k % 7) - 3) * 0.3))

with open(stem + "par.tab", "w") as f:
    f.write("TABLE NO.  2\n")
    f.write(" NUM ID ETA1 ETA2 ETA3\n")
    seen = set()
    for r in rows:
        if r["ID"] in seen:
            continue
        seen.add(r["ID"])
        i = int(r["ID"])
        f.write(" %d %d %.4f %.4f %.4f\n" % (int(r["NUM"]), i, (i - 2.5) * 0.1, (2.5 - i) * 0.05, i * 0.01))

with open(lst_name, "w") as f:
    f.write("NM-TRAN MESSAGES\n\n")
    f.write(" TOT. NO. OF OBS RECS:     %d\n" % n_obs)
    f.write(" TOT. NO. OF INDIVIDUALS:  %d\n" % len(seen))
    f.write(" NO. OF DATA RECS IN DATA SET:  %d\n\n" % len(rows))
    f.write(" #TERM:\n 0MINIMIZATION SUCCESSFUL\n NO. OF FUNCTION EVALUATIONS USED:      123\n\n")
    f.write(" #TERE:\n")
print("Stop Time: done")
'''


def write_dataset(path: Path) -> Path:
    """Write a small PK dataset: 4 subjects, one dose and three samples each."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = ["C,NUM,ID,TIME,EVID,MDV,AMT,CMT,DV,WT,AGE,SEX"]
    num = 0
    for subject in range(1, 5):
        wt = 60 + subject * 5
        age = 30 + subject * 3
        sex = subject % 2
        num += 1
        lines.append(f".,{num},{subject},0,1,1,100,1,.,{wt},{age},{sex}")
        for time_h, conc in ((1.0, 2.1), (2.0, 1.8), (4.0, 1.1)):
            num += 1
            lines.append(f".,{num},{subject},{time_h},0,0,.,2,{conc * subject:.2f},{wt},{age},{sex}")
    _ = path.write_text("\n".join(lines) + "\n")
    return path


def ext_text(ofv: float, thetas: list[float]) -> str:
    """Build an .ext file with final estimates, standard errors and fixed flags."""
    names = [f"THETA{i + 1}" for i in range(len(thetas))]
    names += ["OMEGA(1,1)", "OMEGA(2,1)", "OMEGA(2,2)", "SIGMA(1,1)"]
    final = [*thetas, 0.09, 0.0, 0.12, 0.04]
    se = [abs(t) * 0.1 for t in thetas] + [0.02, 1.0e10, 0.03, 0.005]
    fixed = [0] * len(thetas) + [0, 1, 0, 0]

    def row(iteration: int, values: list[float], obj: float) -> str:
        return " " + "  ".join([str(iteration), *[f"{v:.6E}" for v in values], f"{obj:.6E}"])

    return "".join(
        [
            EXT_HEADER,
            " ITERATION  " + "  ".join(names) + "  OBJ\n",
            row(0, [v * 1.1 for v in final], ofv + 50.0) + "\n",
            row(-1000000000, final, ofv) + "\n",
            row(-1000000001, se, 0.0) + "\n",
            row(-1000000006, fixed, 0.0) + "\n",
        ]
    )


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def nmtrack_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a temporary nmtrack project whose engine is the fake nmfe."""
    from nmtrack.db import init_db

    project_dir = temp_dir / ".nmtrack"
    project_dir.mkdir()

    fake_nmfe = temp_dir / "bin" / "fake_nmfe.py"
    fake_nmfe.parent.mkdir()
    _ = fake_nmfe.write_text(FAKE_NMFE)

    config = {
        "nmfe_command": [sys.executable, str(fake_nmfe)],
        "cluster_submit_command": [sys.executable, "-c", "print('4242')"],
        "max_concurrent": 4,
        "poll_interval": 0.1,
        "heartbeat_interval": 1,
        "heartbeat_timeout": 120,
    }
    with (project_dir / "config.yaml").open("w") as f:
        yaml.safe_dump(config, f)

    init_db(project_dir / "nmtrack.db")
    _ = write_dataset(temp_dir / "data" / "analysis.csv")
    (temp_dir / "models").mkdir()

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def model_dir(nmtrack_project: Path) -> Path:
    """Directory holding the project's models."""
    return nmtrack_project / "models"


@pytest.fixture
def db_connection(nmtrack_project: Path) -> Generator[sqlite3.Connection, None, None]:
    """Get a database connection for the test project."""
    from nmtrack.db import get_connection

    db_path = nmtrack_project / ".nmtrack" / "nmtrack.db"
    conn = get_connection(db_path)
    yield conn
    conn.close()


@pytest.fixture
def data_spec_path(nmtrack_project: Path) -> Path:
    """Data spec for the sample dataset."""
    spec = {
        "SETUP__": {
            "flags": {
                "cont_cov": ["WT", "AGE"],
                "cat_cov": ["SEX"],
                "eta": ["ETA1", "ETA2"],
            }
        },
        "DV": {"short": "Concentration", "unit": "mg/L"},
        "TIME": {"short": "Time after dose", "unit": "h"},
        "WT": {"short": "Weight", "unit": "kg"},
        "AGE": {"short": "Age", "unit": "y"},
        "SEX": {"short": "Sex", "values": {"Male": 0, "Female": 1}},
        "ETA1": {"short": "ETA on KA"},
    }
    path = nmtrack_project / "data" / "spec.yaml"
    with path.open("w") as f:
        yaml.safe_dump(spec, f, sort_keys=False)
    return path


@pytest.fixture
def finish_run() -> Callable[..., None]:
    """Fake a finished estimation for a model without running anything.

    Writes the sentinels a successful local run leaves behind plus the
    listing and estimates files.
    """
    from nmtrack.models.output import ExitStatus, SubmissionMeta
    from nmtrack.outputs import EXIT_STATUS_FILE, SUBMISSION_FILE, write_json
    from nmtrack.registry import definition_md5, utcnow

    def _finish(
        record,  # noqa: ANN001
        ofv: float | None = 1000.0,
        thetas: list[float] | None = None,
        exit_code: int = 0,
    ) -> None:
        output_dir = record.output_dir
        output_dir.mkdir(parents=True, exist_ok=True)
        write_json(
            output_dir / SUBMISSION_FILE,
            SubmissionMeta(
                model_id=record.id,
                job_id=1,
                mode="local",
                command_argv=["nmfe75", f"{record.id}.ctl", f"{record.id}.lst"],
                submitted_at=utcnow(),
                definition_md5=definition_md5(record.definition_path),
            ),
        )
        _ = (output_dir / f"{record.id}.lst").write_text(" #TERM:\n 0MINIMIZATION SUCCESSFUL\n\n")
        if ofv is not None:
            _ = (output_dir / f"{record.id}.ext").write_text(ext_text(ofv, thetas or [1.2, 4.8, 52.0]))
        write_json(
            output_dir / EXIT_STATUS_FILE,
            ExitStatus(exit_code=exit_code, finished_at=utcnow()),
        )

    return _finish
