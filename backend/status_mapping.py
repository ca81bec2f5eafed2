# status_mapping.py - Translate work item statuses to and from board columns
#
# Remediation tasks, risk treatments, client controls and policies each have
# their own status enum. The task board shows them all in four columns
# (todo / in_progress / review / done); these tables move a status between
# the two vocabularies.
from enum import Enum
from typing import Dict

from models import (
    BoardStatus, ControlStatus, PolicyStatus, RemediationStatus, TreatmentStatus,
)


class SourceType(str, Enum):
    PROJECT_TASK = "project_task"
    REMEDIATION = "remediation"
    RISK_TREATMENT = "risk_treatment"
    CONTROL = "control"
    POLICY = "policy"


TODO, IN_PROGRESS, REVIEW, DONE = (
    BoardStatus.TODO.value, BoardStatus.IN_PROGRESS.value,
    BoardStatus.REVIEW.value, BoardStatus.DONE.value,
)

TO_BOARD: Dict[SourceType, Dict[str, str]] = {
    SourceType.PROJECT_TASK: {s.value: s.value for s in BoardStatus},
    SourceType.REMEDIATION: {
        RemediationStatus.OPEN.value: TODO,
        RemediationStatus.IN_PROGRESS.value: IN_PROGRESS,
        RemediationStatus.RESOLVED.value: REVIEW,
        RemediationStatus.CLOSED.value: DONE,
    },
    SourceType.RISK_TREATMENT: {
        TreatmentStatus.PLANNED.value: TODO,
        TreatmentStatus.IN_PROGRESS.value: IN_PROGRESS,
        TreatmentStatus.IMPLEMENTED.value: REVIEW,
        TreatmentStatus.VERIFIED.value: DONE,
    },
    SourceType.CONTROL: {
        ControlStatus.NOT_IMPLEMENTED.value: TODO,
        ControlStatus.IN_PROGRESS.value: IN_PROGRESS,
        ControlStatus.IMPLEMENTED.value: REVIEW,
        ControlStatus.NOT_APPLICABLE.value: DONE,
    },
    SourceType.POLICY: {
        PolicyStatus.DRAFT.value: TODO,
        PolicyStatus.REVIEW.value: REVIEW,
        PolicyStatus.APPROVED.value: DONE,
        PolicyStatus.ARCHIVED.value: DONE,
    },
}

FROM_BOARD: Dict[SourceType, Dict[str, str]] = {
    SourceType.PROJECT_TASK: {s.value: s.value for s in BoardStatus},
    SourceType.REMEDIATION: {
        TODO: RemediationStatus.OPEN.value,
        IN_PROGRESS: RemediationStatus.IN_PROGRESS.value,
        REVIEW: RemediationStatus.RESOLVED.value,
        DONE: RemediationStatus.CLOSED.value,
    },
    SourceType.RISK_TREATMENT: {
        TODO: TreatmentStatus.PLANNED.value,
        IN_PROGRESS: TreatmentStatus.IN_PROGRESS.value,
        REVIEW: TreatmentStatus.IMPLEMENTED.value,
        DONE: TreatmentStatus.VERIFIED.value,
    },
    SourceType.CONTROL: {
        TODO: ControlStatus.NOT_IMPLEMENTED.value,
        IN_PROGRESS: ControlStatus.IN_PROGRESS.value,
        REVIEW: ControlStatus.IMPLEMENTED.value,
        # "not_applicable" is a scoping decision, never the result of a drag
        DONE: ControlStatus.IMPLEMENTED.value,
    },
    SourceType.POLICY: {
        TODO: PolicyStatus.DRAFT.value,
        IN_PROGRESS: PolicyStatus.DRAFT.value,
        REVIEW: PolicyStatus.REVIEW.value,
        DONE: PolicyStatus.APPROVED.value,
    },
}

# Where an unrecognised board status lands for each source
INITIAL_STATUS: Dict[SourceType, str] = {
    SourceType.PROJECT_TASK: TODO,
    SourceType.REMEDIATION: RemediationStatus.OPEN.value,
    SourceType.RISK_TREATMENT: TreatmentStatus.PLANNED.value,
    SourceType.CONTROL: ControlStatus.NOT_IMPLEMENTED.value,
    SourceType.POLICY: PolicyStatus.DRAFT.value,
}


def _status_str(status) -> str:
    if status is None:
        return ""
    return status.value if hasattr(status, "value") else str(status)


def to_board_status(source_type, status) -> str:
    """Board column for a source entity's status; unknown statuses go to todo."""
    source = SourceType(source_type)
    return TO_BOARD[source].get(_status_str(status), TODO)


def from_board_status(source_type, board_status) -> str:
    """Source entity status for a board column; unknown columns give the initial status."""
    source = SourceType(source_type)
    return FROM_BOARD[source].get(_status_str(board_status), INITIAL_STATUS[source])
