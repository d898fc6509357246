"""Unified exception taxonomy for the indexing pipeline.

Every domain exception inherits from ``PipelineError`` and carries
structured context fields (stage, code, retryability) so that the build
orchestrator, the query engine and whatever transport sits in front of
them can make consistent decisions and log uniformly.

Taxonomy categories
-------------------
- ``ValidationError``   — malformed input (coordinates, zones), never retryable.
- ``TransientError``    — contention or temporary failures, retryable.
- ``PermanentError``    — unrecoverable domain failures, not retryable.
- ``ContractError``     — payload/schema drift between stages, never retryable.

Domain kinds shared across the package live here as well
(``NotFoundError``, ``AlreadyExistsError``, ``AlreadyHasDataError``,
``LockedConflictError``).  Errors owned by one subsystem live beside it:
``InvalidCoordinateError``/``ZoneMismatchError`` in
``lidar_index.models.geometry``, ``ToolFailureError`` in
``lidar_index.engine.base`` and ``BuildFailureError`` in
``lidar_index.orchestrators.build_pipeline``.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all indexing-domain errors.

    Attributes:
        message: Human-readable error description.
        stage: Stage where the error occurred
            (e.g. ``"octree_builder"``, ``"query"``).
        code: Machine-readable error code (e.g. ``"NOT_FOUND"``).
        retryable: Whether the caller may retry the operation.
        correlation_id: Request correlation identifier.
    """

    #: Default stage for subclasses (override via class attribute or kwarg).
    default_stage: str = ""
    #: Default code for subclasses (override via class attribute or kwarg).
    default_code: str = ""

    def __init__(
        self,
        message: str = "",
        *,
        stage: str = "",
        code: str = "",
        retryable: bool = False,
        correlation_id: str = "",
    ) -> None:
        self.message = message
        self.stage = stage or self.default_stage
        self.code = code or self.default_code
        self.retryable = retryable
        self.correlation_id = correlation_id
        super().__init__(message)

    @property
    def category(self) -> str:
        """Return the error category based on concrete class."""
        if isinstance(self, ContractError):
            return "contract"
        if isinstance(self, ValidationError):
            return "validation"
        if isinstance(self, TransientError):
            return "transient"
        if isinstance(self, PermanentError):
            return "permanent"
        return "transient" if self.retryable else "permanent"

    def to_error_dict(self) -> dict[str, object]:
        """Return a structured error payload with stable keys."""
        return {
            "category": self.category,
            "code": self.code,
            "stage": self.stage,
            "message": self.message,
            "retryable": self.retryable,
            "correlation_id": self.correlation_id,
        }


# ---------------------------------------------------------------------------
# Category base classes
# ---------------------------------------------------------------------------


class ValidationError(PipelineError):
    """Input or domain-model validation failure. Never retryable."""

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class TransientError(PipelineError):
    """Temporary failure that may succeed on retry."""

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class PermanentError(PipelineError):
    """Unrecoverable domain failure. Not retryable."""

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class ContractError(PipelineError):
    """Payload or schema drift between stages. Never retryable."""

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Shared domain errors
# ---------------------------------------------------------------------------


class NotFoundError(PermanentError):
    """A workspace, dataset, grid cell or datablock does not exist.

    Lookups never answer an unknown key with an empty success; they
    raise this instead so callers can tell "no data" from "no such thing".

    Attributes:
        resource: Kind of resource (``"workspace"``, ``"dataset"``, ...).
        key: Identifier that was looked up.
    """

    default_stage = "lookup"
    default_code = "NOT_FOUND"

    def __init__(self, resource: str, key: str, **kwargs: object) -> None:
        self.resource = resource
        self.key = key
        super().__init__(f"{resource} not found: {key}", **kwargs)


class AlreadyExistsError(PermanentError):
    """A workspace or dataset with the same name is already registered."""

    default_stage = "registry"
    default_code = "ALREADY_EXISTS"

    def __init__(self, resource: str, key: str, **kwargs: object) -> None:
        self.resource = resource
        self.key = key
        super().__init__(f"{resource} already exists: {key}", **kwargs)


class AlreadyHasDataError(PermanentError):
    """Add-data was requested on a dataset that is not in ``NO_DATA``."""

    default_stage = "build_orchestrator"
    default_code = "ALREADY_HAS_DATA"

    def __init__(self, dataset: str, state: str, **kwargs: object) -> None:
        self.dataset = dataset
        self.state = state
        super().__init__(
            f"Dataset {dataset!r} already has data or is being built (state={state})",
            **kwargs,
        )


class LockedConflictError(TransientError):
    """A concurrent writer changed a record between read and update.

    Raised by versioned updates when the stored version no longer
    matches the one the caller read.  Retryable: the caller may re-read
    and decide again.
    """

    default_stage = "registry"
    default_code = "LOCKED_CONFLICT"
