# Copyright (c) Syntropy Systems
"""Exception hierarchy for nmtrack."""


class NmtrackError(Exception):
    """Base class for all nmtrack errors."""


class NotFoundError(NmtrackError):
    """A model, definition file or output artifact does not exist."""


class ModelExistsError(NmtrackError):
    """A model or output directory already exists and overwrite was not requested."""


class IntegrityError(NmtrackError):
    """Data does not line up: unmatched join rows, incompatible models, bad lineage."""


class BackendError(NmtrackError):
    """The estimation backend rejected a submission or failed."""


class SubmissionConflictError(BackendError):
    """The model already has an active submission."""


class ConfigError(NmtrackError):
    """Required configuration, spec flags or columns are missing or invalid."""
