# Copyright (c) Syntropy Systems
"""Model registry: control streams on disk plus their sidecar annotations.

A model with id ``X`` in directory ``D`` is the pair ``D/X.ctl`` (the
definition) and ``D/X.yaml`` (annotations). The backend writes outputs to
``D/X/``. Every annotation is written through to the sidecar immediately.
"""
from __future__ import annotations

import hashlib
import logging
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Union

import yaml
from typing_extensions import TypeAlias

from nmtrack.errors import ConfigError, IntegrityError, ModelExistsError, NotFoundError
from nmtrack.models.model import ModelMeta, ModelRecord

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

ModelRef: TypeAlias = Union[ModelRecord, str, int]

ANNOTATION_FIELDS = ("description", "notes", "tags", "star")

STARTER_TEMPLATE = """$PROBLEM {model_id}

$INPUT C NUM ID TIME EVID MDV AMT CMT DV

$DATA ../data/analysis.csv IGNORE=@

$SUBROUTINES ADVAN2 TRANS2

$PK
  KA = THETA(1) * EXP(ETA(1))
  CL = THETA(2) * EXP(ETA(2))
  V  = THETA(3) * EXP(ETA(3))
  S2 = V

$ERROR
  IPRED = F
  Y = IPRED * (1 + EPS(1))

$THETA
(0, 1)   ; KA
(0, 5)   ; CL
(0, 50)  ; V

$OMEGA
0.1 ; ETA-KA
0.1 ; ETA-CL
0.1 ; ETA-V

$SIGMA
0.05 ; proportional

$EST METHOD=1 INTERACTION MAXEVAL=9999 PRINT=5 NOABORT
$COV PRINT=E
$TABLE NUM IPRED NPDE CWRES NOPRINT ONEHEADER FILE={model_id}.tab
$TABLE NUM ETAS(1:LAST) FIRSTONLY NOPRINT ONEHEADER FILE={model_id}par.tab
"""

_OUTPUT_SUFFIXES = "tab|msf|ext|phi|cov|cor|coi|lst|grd|shk"


def utcnow() -> str:
    """Get current UTC time as ISO format string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def id_sort_key(model_id: str) -> tuple[int, int, str]:
    """Sort numeric ids numerically, ahead of other ids."""
    if model_id.isdigit():
        return (0, int(model_id), "")
    return (1, 0, model_id)


def _validate_id(model_id: object) -> str:
    text = str(model_id).strip()
    if not text or "/" in text or "\\" in text or text in (".", ".."):
        msg = f"Invalid model id: {model_id!r}"
        raise ConfigError(msg)
    return text


def definition_md5(path: Path) -> str:
    """Hash a definition file, used to detect edits after submission."""
    return hashlib.md5(path.read_bytes()).hexdigest()  # noqa: S324


def _write_meta(record: ModelRecord) -> None:
    data = record.meta.model_dump(mode="json")
    with record.meta_path.open("w") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def _read_meta(meta_path: Path) -> ModelMeta:
    with meta_path.open() as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        msg = f"Sidecar is not a mapping: {meta_path}"
        raise IntegrityError(msg)
    data.setdefault("id", meta_path.stem)
    return ModelMeta.model_validate(data)


def _update_model_id(text: str, old_id: str, new_id: str) -> str:
    """Point $PROBLEM and output file names at the new id."""
    text = re.sub(
        rf"(?<![\w.]){re.escape(old_id)}(?=[A-Za-z_]*\.(?:{_OUTPUT_SUFFIXES})\b)",
        new_id,
        text,
    )
    return re.sub(
        r"^(\s*\$PROB\w*)[^\n]*",
        lambda m: f"{m.group(1)} {new_id} based on {old_id}",
        text,
        count=1,
        flags=re.MULTILINE,
    )


# --- Lookup ---

def read_model(directory: Path | str, model_id: str | int) -> ModelRecord:
    """Load a model by directory and id.

    Raises NotFoundError if either the sidecar or the definition is missing.
    """
    directory = Path(directory)
    model_id = _validate_id(model_id)
    meta_path = directory / f"{model_id}.yaml"
    ctl_path = directory / f"{model_id}.ctl"

    if not meta_path.exists():
        msg = f"Model {model_id}: sidecar not found at {meta_path}"
        raise NotFoundError(msg)
    if not ctl_path.exists():
        msg = f"Model {model_id}: definition file not found at {ctl_path}"
        raise NotFoundError(msg)

    meta = _read_meta(meta_path)
    if meta.id != model_id:
        logger.warning("Sidecar %s records id %s, using %s", meta_path, meta.id, model_id)
        meta.id = model_id
    return ModelRecord(id=model_id, directory=directory.resolve(), meta=meta)


def read_model_path(path: Path | str) -> ModelRecord:
    """Load a model from the path of its .ctl or .yaml file (or its bare stem)."""
    path = Path(path)
    return read_model(path.parent, path.stem if path.suffix in (".ctl", ".yaml") else path.name)


def resolve_model(ref: ModelRef, directory: Path | str | None = None) -> ModelRecord:
    """Accept a record or an id and return the record."""
    if isinstance(ref, ModelRecord):
        return ref
    if directory is None:
        msg = f"A directory is required to look up model {ref}"
        raise ConfigError(msg)
    return read_model(directory, ref)


def list_models(directory: Path | str) -> list[ModelRecord]:
    """Return every model in a directory, ordered by id.

    A sidecar without a matching definition file is skipped with a warning.
    """
    directory = Path(directory)
    if not directory.is_dir():
        msg = f"Model directory not found: {directory}"
        raise NotFoundError(msg)

    records: list[ModelRecord] = []
    for meta_path in sorted(directory.glob("*.yaml")):
        model_id = meta_path.stem
        if not (directory / f"{model_id}.ctl").exists():
            logger.warning("Skipping %s: no matching .ctl file", meta_path)
            continue
        records.append(read_model(directory, model_id))

    records.sort(key=lambda r: id_sort_key(r.id))
    return records


def model_lineage(record: ModelRecord) -> list[str]:
    """Return the ancestor ids of a model, parent first.

    Stops at the first ancestor whose files are missing.
    """
    lineage: list[str] = []
    seen = {record.id}
    current = record
    while current.parent_id is not None:
        parent_id = current.parent_id
        if parent_id in seen:
            msg = f"Model {record.id}: lineage cycle through {parent_id}"
            raise IntegrityError(msg)
        lineage.append(parent_id)
        seen.add(parent_id)
        try:
            current = read_model(record.directory, parent_id)
        except NotFoundError:
            break
    return lineage


# --- Creation ---

def create_model(  # noqa: PLR0913
    directory: Path | str,
    new_id: str | int,
    parent: ModelRef | None = None,
    overwrite: bool = False,  # noqa: FBT001, FBT002
    description: str | None = None,
    tags: Iterable[str] | None = None,
    definition_text: str | None = None,
    inherit_tags: bool = True,  # noqa: FBT001, FBT002
    update_model_id: bool = True,  # noqa: FBT001, FBT002
) -> ModelRecord:
    """Create a new model, optionally derived from a parent.

    With a parent, the parent's control stream is copied as the starting
    point, the derivation is recorded in ``based_on`` and (by default) the
    parent's tags are carried over. Without a parent, ``definition_text``
    is written, or a starter control stream if that is None.

    Raises:
        ModelExistsError: the id is taken and overwrite is False
        NotFoundError: the parent does not exist
        IntegrityError: the derivation would create a cycle

    """
    directory = Path(directory)
    new_id = _validate_id(new_id)
    directory.mkdir(parents=True, exist_ok=True)

    ctl_path = directory / f"{new_id}.ctl"
    meta_path = directory / f"{new_id}.yaml"
    if (ctl_path.exists() or meta_path.exists()) and not overwrite:
        msg = f"Model {new_id} already exists in {directory}; pass overwrite=True to replace it"
        raise ModelExistsError(msg)

    parent_record = resolve_model(parent, directory) if parent is not None else None
    based_on: list[str] = []
    tag_list: list[str] = []

    if parent_record is not None:
        if parent_record.id == new_id or new_id in model_lineage(parent_record):
            msg = f"Model {new_id} cannot be derived from {parent_record.id}: lineage cycle"
            raise IntegrityError(msg)
        text = parent_record.definition_path.read_text()
        if update_model_id:
            text = _update_model_id(text, parent_record.id, new_id)
        based_on = [parent_record.id]
        if inherit_tags:
            tag_list = list(parent_record.tags)
    elif definition_text is not None:
        text = definition_text
    else:
        text = STARTER_TEMPLATE.format(model_id=new_id)

    for tag in tags or []:
        if tag not in tag_list:
            tag_list.append(tag)

    output_dir = directory / new_id
    if overwrite and output_dir.is_dir():
        logger.info("Removing stale output directory %s", output_dir)
        shutil.rmtree(output_dir)

    _ = ctl_path.write_text(text)
    record = ModelRecord(
        id=new_id,
        directory=directory.resolve(),
        meta=ModelMeta(
            id=new_id,
            based_on=based_on,
            description=description,
            tags=tag_list,
            created_at=utcnow(),
        ),
    )
    _write_meta(record)
    logger.debug("Created model %s in %s (parent=%s)", new_id, directory, record.parent_id)
    return record


def copy_model(
    parent: ModelRecord,
    new_id: str | int,
    overwrite: bool = False,  # noqa: FBT001, FBT002
    description: str | None = None,
    inherit_tags: bool = True,  # noqa: FBT001, FBT002
) -> ModelRecord:
    """Derive a new model in the parent's directory."""
    return create_model(
        parent.directory,
        new_id,
        parent=parent,
        overwrite=overwrite,
        description=description,
        inherit_tags=inherit_tags,
    )


# --- Annotation ---

def replace_description(record: ModelRecord, description: str | None) -> ModelRecord:
    """Overwrite the description."""
    record.meta.description = description
    _write_meta(record)
    return record


def add_notes(record: ModelRecord, notes: str | Iterable[str]) -> ModelRecord:
    """Append one or more notes."""
    if isinstance(notes, str):
        notes = [notes]
    record.meta.notes.extend(notes)
    _write_meta(record)
    return record


def add_tags(record: ModelRecord, tags: str | Iterable[str]) -> ModelRecord:
    """Add tags, ignoring ones already present."""
    if isinstance(tags, str):
        tags = [tags]
    for tag in tags:
        if tag not in record.meta.tags:
            record.meta.tags.append(tag)
    _write_meta(record)
    return record


def remove_tags(record: ModelRecord, tags: str | Iterable[str]) -> ModelRecord:
    """Remove tags; absent tags are ignored."""
    if isinstance(tags, str):
        tags = [tags]
    drop = set(tags)
    record.meta.tags = [t for t in record.meta.tags if t not in drop]
    _write_meta(record)
    return record


def replace_tags(record: ModelRecord, tags: Iterable[str]) -> ModelRecord:
    """Replace the whole tag set."""
    record.meta.tags = list(dict.fromkeys(tags))
    _write_meta(record)
    return record


def set_star(record: ModelRecord, star: bool = True) -> ModelRecord:  # noqa: FBT001, FBT002
    """Star or unstar a model."""
    record.meta.star = star
    _write_meta(record)
    return record


def add_based_on(record: ModelRecord, model_ids: str | Iterable[str]) -> ModelRecord:
    """Record extra models this one draws on."""
    if isinstance(model_ids, str):
        model_ids = [model_ids]
    for model_id in model_ids:
        model_id = _validate_id(model_id)
        if model_id == record.id:
            msg = f"Model {record.id} cannot be based on itself"
            raise IntegrityError(msg)
        other = read_model(record.directory, model_id)
        if record.id in model_lineage(other):
            msg = f"Model {record.id} cannot be based on {model_id}: lineage cycle"
            raise IntegrityError(msg)
        if model_id not in record.meta.based_on:
            record.meta.based_on.append(model_id)
    _write_meta(record)
    return record


def annotate(record: ModelRecord, field: str, value: object) -> ModelRecord:
    """Set one annotation field by name.

    ``description`` overwrites, ``notes`` appends, ``tags`` adds and
    ``star`` sets the flag.
    """
    if field == "description":
        return replace_description(record, None if value is None else str(value))
    if field == "notes":
        return add_notes(record, value)  # type: ignore[arg-type]
    if field == "tags":
        return add_tags(record, value)  # type: ignore[arg-type]
    if field == "star":
        return set_star(record, bool(value))
    msg = f"Unknown annotation field {field!r}; expected one of {', '.join(ANNOTATION_FIELDS)}"
    raise ValueError(msg)
