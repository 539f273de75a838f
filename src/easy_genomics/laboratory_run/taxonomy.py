"""LaboratoryRun status vocabulary, lifecycle ranks and foreign status tables."""

from __future__ import annotations

from typing import Mapping


STATUS_PENDING = "PENDING"
STATUS_SUBMITTED = "SUBMITTED"
STATUS_STARTING = "STARTING"
STATUS_RUNNING = "RUNNING"
STATUS_STOPPING = "STOPPING"
STATUS_SUCCEEDED = "SUCCEEDED"
STATUS_FAILED = "FAILED"
STATUS_CANCELLED = "CANCELLED"
STATUS_COMPLETED = "COMPLETED"
STATUS_DELETED = "DELETED"

IN_FLIGHT_STATUSES: tuple[str, ...] = (
    STATUS_PENDING,
    STATUS_SUBMITTED,
    STATUS_STARTING,
    STATUS_RUNNING,
    STATUS_STOPPING,
)

# Every component that decides whether a run still needs reconciliation reads
# this constant and nothing else.
TERMINAL_STATUSES: frozenset[str] = frozenset(
    {
        STATUS_FAILED,
        STATUS_SUCCEEDED,
        STATUS_CANCELLED,
        STATUS_COMPLETED,
        STATUS_DELETED,
    }
)

SUPPORTED_STATUSES: tuple[str, ...] = IN_FLIGHT_STATUSES + tuple(sorted(TERMINAL_STATUSES))

_TERMINAL_RANK = len(IN_FLIGHT_STATUSES)
_STATUS_RANK: dict[str, int] = {status: rank for rank, status in enumerate(IN_FLIGHT_STATUSES)}
_STATUS_RANK.update({status: _TERMINAL_RANK for status in TERMINAL_STATUSES})

PLATFORM_SEQERA = "Seqera Cloud"
PLATFORM_OMICS = "AWS HealthOmics"
SUPPORTED_PLATFORMS: tuple[str, ...] = (PLATFORM_SEQERA, PLATFORM_OMICS)

SEQERA_STATUS_MAP: dict[str, str] = {
    "SUBMITTED": STATUS_SUBMITTED,
    "RUNNING": STATUS_RUNNING,
    "SUCCEEDED": STATUS_SUCCEEDED,
    "FAILED": STATUS_FAILED,
    "CANCELLED": STATUS_CANCELLED,
}

OMICS_STATUS_MAP: dict[str, str] = {
    "PENDING": STATUS_PENDING,
    "STARTING": STATUS_STARTING,
    "RUNNING": STATUS_RUNNING,
    "STOPPING": STATUS_STOPPING,
    "COMPLETED": STATUS_COMPLETED,
    "DELETED": STATUS_DELETED,
    "CANCELLED": STATUS_CANCELLED,
    "FAILED": STATUS_FAILED,
}

FOREIGN_STATUS_MAPS: dict[str, Mapping[str, str]] = {
    PLATFORM_SEQERA: SEQERA_STATUS_MAP,
    PLATFORM_OMICS: OMICS_STATUS_MAP,
}


class LaboratoryRunTaxonomyError(ValueError):
    """Raised when a status or platform is outside the supported vocabulary."""


def normalize_status(value: str | None) -> str:
    return str(value or "").strip().upper()


def is_terminal_status(status: str | None) -> bool:
    return normalize_status(status) in TERMINAL_STATUSES


def ensure_supported_status(status: str | None) -> str:
    normalized = normalize_status(status)
    if normalized not in _STATUS_RANK:
        raise LaboratoryRunTaxonomyError(f"laboratory run status not allowed: {normalized!r}")
    return normalized


def ensure_supported_platform(platform: str | None) -> str:
    normalized = str(platform or "").strip()
    if normalized not in SUPPORTED_PLATFORMS:
        raise LaboratoryRunTaxonomyError(
            f"laboratory run platform not supported: {normalized!r}; allowed={list(SUPPORTED_PLATFORMS)!r}"
        )
    return normalized


def can_transition(current: str | None, target: str | None) -> bool:
    """Return True when moving from ``current`` to ``target`` is a legal step.

    Terminal statuses are absorbing. Unknown stored statuses rank below every
    known status, so any known observation may replace them. Moves must go to a
    strictly later lifecycle rank; a regression is never applied.
    """
    source = normalize_status(current)
    destination = normalize_status(target)
    if destination not in _STATUS_RANK or source == destination:
        return False
    if source in TERMINAL_STATUSES:
        return False
    source_rank = _STATUS_RANK.get(source, -1)
    return _STATUS_RANK[destination] > source_rank


def translate_foreign_status(platform: str, foreign_status: str | None) -> str | None:
    """Map an execution service status onto the internal vocabulary.

    Returns None for statuses the table does not know, which callers treat as
    "no change".
    """
    table = FOREIGN_STATUS_MAPS.get(ensure_supported_platform(platform))
    if table is None:
        return None
    return table.get(normalize_status(foreign_status))
