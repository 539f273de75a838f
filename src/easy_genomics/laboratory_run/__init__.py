"""LaboratoryRun status reconciliation surfaces."""

from .contracts import (
    EntityType,
    Laboratory,
    LaboratoryRun,
    LaboratoryRunContractError,
    Operation,
    ProcessingEvent,
)
from .errors import (
    ConditionFailedError,
    InvalidRequestError,
    LaboratoryNotFoundError,
    LaboratoryRunError,
    LaboratoryRunNotFoundError,
    NotFoundError,
    PublishError,
    TransientDependencyError,
    UnauthorizedAccessError,
)
from .processor import BatchResult, LaboratoryRunUpdateProcessor, MessageOutcome
from .taxonomy import (
    IN_FLIGHT_STATUSES,
    SUPPORTED_PLATFORMS,
    SUPPORTED_STATUSES,
    TERMINAL_STATUSES,
    LaboratoryRunTaxonomyError,
    can_transition,
    is_terminal_status,
    translate_foreign_status,
)
from .trigger import LaboratoryRunStatusTriggerService, TriggerResult, parse_run_ids

__all__ = [
    "IN_FLIGHT_STATUSES",
    "SUPPORTED_PLATFORMS",
    "SUPPORTED_STATUSES",
    "TERMINAL_STATUSES",
    "BatchResult",
    "ConditionFailedError",
    "EntityType",
    "InvalidRequestError",
    "Laboratory",
    "LaboratoryNotFoundError",
    "LaboratoryRun",
    "LaboratoryRunContractError",
    "LaboratoryRunError",
    "LaboratoryRunNotFoundError",
    "LaboratoryRunStatusTriggerService",
    "LaboratoryRunTaxonomyError",
    "LaboratoryRunUpdateProcessor",
    "MessageOutcome",
    "NotFoundError",
    "Operation",
    "ProcessingEvent",
    "PublishError",
    "TransientDependencyError",
    "TriggerResult",
    "UnauthorizedAccessError",
    "can_transition",
    "is_terminal_status",
    "parse_run_ids",
    "translate_foreign_status",
]
