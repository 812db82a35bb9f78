"""
Error taxonomy for the dataset layer.

Permission, not-found and validation errors stop an operation at the service
boundary.  Source-execution errors are converted into error envelopes by
preview / query.  Inference errors are recorded on the dataset itself.
"""
from __future__ import annotations


class DatasetError(Exception):
    """Base class for all dataset-layer failures."""


class PermissionDenied(DatasetError):
    """Caller lacks the role required for the operation."""

    def __init__(self, user_id: str, dataset_id: str, required: str):
        self.user_id = user_id
        self.dataset_id = dataset_id
        self.required = required
        super().__init__(
            f"User '{user_id}' needs '{required}' access to dataset '{dataset_id}'."
        )


class NotFound(DatasetError):
    """Dataset or referenced datasource does not exist."""

    def __init__(self, kind: str, ident: str):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind.capitalize()} '{ident}' not found.")


class ValidationError(DatasetError, ValueError):
    """Malformed payload, query request or unsupported dataset type."""


class SourceExecutionError(DatasetError, RuntimeError):
    """The underlying SQL engine rejected or failed a compiled query."""


class InferenceError(DatasetError):
    """Sampling or type inference failed."""
