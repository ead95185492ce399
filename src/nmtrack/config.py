# Copyright (c) Syntropy Systems
"""Configuration management for nmtrack."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import yaml

PROJECT_DIR_NAME = ".nmtrack"


@dataclass
class NmtrackConfig:
    """Configuration for nmtrack."""

    # argv for the estimation engine; control stream and listing are appended
    nmfe_command: list[str] = field(default_factory=lambda: ["nmfe75"])

    # Parallel configuration file used when a run asks for parallel execution
    parafile: str | None = None

    # Command that accepts a job script for cluster submission
    cluster_submit_command: list[str] = field(
        default_factory=lambda: ["sbatch", "--parsable"]
    )

    # Maximum number of estimations running at the same time
    max_concurrent: int = 4

    # Poll interval while waiting for a slot or for a run to finish (seconds)
    poll_interval: float = 5.0

    # Heartbeat interval in seconds
    heartbeat_interval: int = 30

    # Timeout for considering a running job orphaned (seconds)
    heartbeat_timeout: int = 120

    # Row index column shared by input data and output tables
    join_key: str = "NUM"

    # Raise instead of reporting None for run log fields that can't be computed
    strict_run_log: bool = False

    # Default number of lines returned by tail_output
    tail_lines: int = 20

    def to_dict(self) -> dict[str, object]:
        """Return the config as a plain mapping suitable for YAML."""
        return {
            "nmfe_command": list(self.nmfe_command),
            "parafile": self.parafile,
            "cluster_submit_command": list(self.cluster_submit_command),
            "max_concurrent": self.max_concurrent,
            "poll_interval": self.poll_interval,
            "heartbeat_interval": self.heartbeat_interval,
            "heartbeat_timeout": self.heartbeat_timeout,
            "join_key": self.join_key,
            "strict_run_log": self.strict_run_log,
            "tail_lines": self.tail_lines,
        }


def find_project_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .nmtrack directory by walking up from start_path.

    Returns None if no .nmtrack directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()
    if current.is_file():
        current = current.parent

    while current != current.parent:
        project_dir = current / PROJECT_DIR_NAME
        if project_dir.is_dir():
            return project_dir
        current = current.parent

    # Check root
    project_dir = current / PROJECT_DIR_NAME
    if project_dir.is_dir():
        return project_dir

    return None


def get_global_config_dir() -> Path:
    """Get the global nmtrack config directory (~/.nmtrack)."""
    return Path.home() / PROJECT_DIR_NAME


def _str_list(value: object) -> list[str] | None:
    if isinstance(value, str):
        return value.split()
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return cast("list[str]", value)
    return None


def load_config(
    project_dir: Path | None = None,
    start_path: Path | None = None,
) -> NmtrackConfig:
    """Load configuration from .nmtrack/config.yaml or defaults.

    Looks for config in:
    1. Provided project_dir
    2. Nearest .nmtrack directory walking up from start_path (or cwd)
    3. ~/.nmtrack/config.yaml
    4. Defaults
    """
    config = NmtrackConfig()

    config_path = None

    if project_dir is not None:
        config_path = project_dir / "config.yaml"
    else:
        found_dir = find_project_dir(start_path)
        if found_dir is not None:
            config_path = found_dir / "config.yaml"
        else:
            global_config = get_global_config_dir() / "config.yaml"
            if global_config.exists():
                config_path = global_config

    if config_path is None or not config_path.exists():
        return config

    with config_path.open() as f:
        data = cast("dict[str, object]", yaml.safe_load(f) or {})

    nmfe_command = _str_list(data.get("nmfe_command"))
    if nmfe_command:
        config.nmfe_command = nmfe_command
    parafile = data.get("parafile")
    if isinstance(parafile, str):
        config.parafile = parafile
    cluster_submit_command = _str_list(data.get("cluster_submit_command"))
    if cluster_submit_command:
        config.cluster_submit_command = cluster_submit_command

    # bool is an int subclass, so reject it explicitly for numeric fields
    max_concurrent = data.get("max_concurrent")
    if isinstance(max_concurrent, int) and not isinstance(max_concurrent, bool):
        config.max_concurrent = max(1, max_concurrent)
    poll_interval = data.get("poll_interval")
    if isinstance(poll_interval, (int, float)) and not isinstance(poll_interval, bool):
        config.poll_interval = float(poll_interval)
    heartbeat_interval = data.get("heartbeat_interval")
    if isinstance(heartbeat_interval, (int, float)) and not isinstance(heartbeat_interval, bool):
        config.heartbeat_interval = int(heartbeat_interval)
    heartbeat_timeout = data.get("heartbeat_timeout")
    if isinstance(heartbeat_timeout, (int, float)) and not isinstance(heartbeat_timeout, bool):
        config.heartbeat_timeout = int(heartbeat_timeout)
    join_key = data.get("join_key")
    if isinstance(join_key, str) and join_key:
        config.join_key = join_key
    strict_run_log = data.get("strict_run_log")
    if isinstance(strict_run_log, bool):
        config.strict_run_log = strict_run_log
    tail_lines = data.get("tail_lines")
    if isinstance(tail_lines, int) and not isinstance(tail_lines, bool):
        config.tail_lines = tail_lines

    return config


def get_db_path(project_dir: Path | None = None) -> Path:
    """Get the path to the submission ledger database."""
    if project_dir is None:
        project_dir = find_project_dir()

    if project_dir is None:
        msg = "No .nmtrack directory found. Run 'nmtrack init' first."
        raise RuntimeError(
            msg
        )

    return project_dir / "nmtrack.db"


def require_project_dir(start_path: Path | None = None) -> Path:
    """Get the project directory or raise an error if not found."""
    project_dir = find_project_dir(start_path)
    if project_dir is None:
        msg = "No .nmtrack directory found. Run 'nmtrack init' first."
        raise RuntimeError(
            msg
        )
    return project_dir
