"""Typed failures raised by the judging core.

Every error carries a stable ``kind`` (the class name), a ``category`` the
HTTP adapter maps to a status code, and a ``context`` dict with the values a
caller needs to render or retry. Contention (a held lock, a duplicate score)
is an ordinary ``JuryError``, not a crash.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

NOT_FOUND = "not_found"
CONFLICT = "conflict"
VALIDATION = "validation"
UNAUTHORIZED = "unauthorized"


class JuryError(Exception):
    category = "error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": self.kind,
            "category": self.category,
            "message": self.message,
        }
        for key, value in self.context.items():
            payload[key] = value.isoformat() if isinstance(value, datetime) else value
        return payload


# ---------------------------------------------------------------------------
# not_found
# ---------------------------------------------------------------------------


class NotFound(JuryError):
    category = NOT_FOUND

    def __init__(self, entity: str, entity_id: Any, **context: Any):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id, **context)


class LockNotFound(JuryError):
    category = NOT_FOUND

    def __init__(self, application_id: int, judge_id: int | None = None):
        super().__init__(
            f"No active lock on application {application_id}"
            + (f" for judge {judge_id}" if judge_id is not None else ""),
            application_id=application_id,
            judge_id=judge_id,
        )


# ---------------------------------------------------------------------------
# conflict
# ---------------------------------------------------------------------------


class AlreadyLocked(JuryError):
    category = CONFLICT

    def __init__(
        self,
        application_id: int,
        judge_id: int | None = None,
        user_id: int | None = None,
        expires_at: datetime | None = None,
        time_remaining: int = 0,
    ):
        super().__init__(
            f"Application {application_id} is currently locked by another judge",
            application_id=application_id,
            locked_by_judge=judge_id,
            locked_by=user_id,
            expires_at=expires_at,
            time_remaining=time_remaining,
        )
        self.judge_id = judge_id
        self.user_id = user_id
        self.expires_at = expires_at
        self.time_remaining = time_remaining


class LockExpired(JuryError):
    category = CONFLICT

    def __init__(self, application_id: int, judge_id: int, expired_at: datetime):
        super().__init__(
            f"Lock on application {application_id} has expired",
            application_id=application_id,
            judge_id=judge_id,
            expired_at=expired_at,
        )


class DuplicateScore(JuryError):
    category = CONFLICT

    def __init__(self, application_id: int, judge_id: int):
        super().__init__(
            f"Judge {judge_id} has already scored application {application_id}",
            application_id=application_id,
            judge_id=judge_id,
        )


class DuplicateAssignment(JuryError):
    category = CONFLICT

    def __init__(self, application_id: int, judge_id: int):
        super().__init__(
            f"Application {application_id} is already assigned to judge {judge_id}",
            application_id=application_id,
            judge_id=judge_id,
        )


class InvalidTransition(JuryError):
    category = CONFLICT

    def __init__(self, assignment_id: int, current: str, target: str):
        super().__init__(
            f"Assignment {assignment_id} cannot move from {current} to {target}",
            assignment_id=assignment_id,
            current_status=current,
            target_status=target,
        )
        self.current = current
        self.target = target


class CannotReassignCompleted(JuryError):
    category = CONFLICT

    def __init__(self, assignment_id: int):
        super().__init__(
            f"Assignment {assignment_id} is completed and cannot be reassigned",
            assignment_id=assignment_id,
        )


class CannotDeclareConflictOnCompleted(JuryError):
    category = CONFLICT

    def __init__(self, assignment_id: int):
        super().__init__(
            f"Cannot declare a conflict on completed assignment {assignment_id}",
            assignment_id=assignment_id,
        )


class AssignmentNotReviewable(JuryError):
    category = CONFLICT

    def __init__(self, assignment_id: int, status: str):
        super().__init__(
            f"Assignment {assignment_id} is {status} and cannot be reviewed",
            assignment_id=assignment_id,
            status=status,
        )


class ApplicationNotReviewable(JuryError):
    category = CONFLICT

    def __init__(self, application_id: int, workflow_stage: str):
        super().__init__(
            f"Application {application_id} is in stage {workflow_stage} and not available for review",
            application_id=application_id,
            workflow_stage=workflow_stage,
        )


# ---------------------------------------------------------------------------
# validation
# ---------------------------------------------------------------------------


class OutOfRange(JuryError):
    category = VALIDATION

    def __init__(self, field: str, value: Any, minimum: float | None = None, maximum: float | None = None):
        if maximum is None:
            bounds = f"at least {minimum}"
        else:
            bounds = f"between {minimum} and {maximum}"
        super().__init__(
            f"{field} must be a number {bounds}, got {value!r}",
            field=field,
            value=value if isinstance(value, (int, float, str)) else repr(value),
            min=minimum,
            max=maximum,
        )
        self.field = field


class MissingCriterion(JuryError):
    category = VALIDATION

    def __init__(self, criteria: list[str]):
        super().__init__(f"Missing criteria: {', '.join(criteria)}", criteria=criteria)
        self.criteria = criteria


class UnknownCriterion(JuryError):
    category = VALIDATION

    def __init__(self, criteria: list[str], rubric: str):
        super().__init__(
            f"Unknown criteria for rubric {rubric}: {', '.join(criteria)}",
            criteria=criteria,
            rubric=rubric,
        )


class UnknownRubric(JuryError):
    category = VALIDATION

    def __init__(self, rubric: str, known: list[str]):
        super().__init__(f"Unknown rubric {rubric!r}", rubric=rubric, known=known)


class InvalidValue(JuryError):
    category = VALIDATION

    def __init__(self, field: str, value: Any, allowed: list[str] | None = None):
        message = f"Invalid {field}: {value!r}"
        if allowed:
            message += f" (expected one of {', '.join(allowed)})"
        super().__init__(message, field=field, value=value, allowed=allowed)


class MissingComments(JuryError):
    category = VALIDATION

    def __init__(self, total_score: float, threshold: float):
        super().__init__(
            f"Comments are required for scores below {threshold:g} (total {total_score:g})",
            total_score=total_score,
            threshold=threshold,
        )


class CapacityExceeded(JuryError):
    category = VALIDATION

    def __init__(self, judge_id: int, assigned: int, maximum: int):
        super().__init__(
            f"Judge {judge_id} has reached maximum capacity ({assigned}/{maximum})",
            judge_id=judge_id,
            assigned=assigned,
            max=maximum,
        )


class JudgeInactive(JuryError):
    category = VALIDATION

    def __init__(self, judge_id: int):
        super().__init__(f"Judge {judge_id} is not active", judge_id=judge_id)


# ---------------------------------------------------------------------------
# unauthorized
# ---------------------------------------------------------------------------


class NotOwner(JuryError):
    category = UNAUTHORIZED

    def __init__(self, entity: str, entity_id: Any, judge_id: int, owner_id: int | None = None):
        super().__init__(
            f"{entity} {entity_id} does not belong to judge {judge_id}",
            entity=entity,
            entity_id=entity_id,
            judge_id=judge_id,
            owner_judge_id=owner_id,
        )
