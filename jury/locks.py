"""Lock manager: exclusive, time-boxed review leases on applications.

A lease is a row in ``application_locks``. The store has no push-based
expiry, so expiry is resolved lazily: every read runs the lease through
:func:`resolve`, which deactivates it if ``now > expires_at``. A periodic
sweep (:func:`cleanup_expired_locks`) flips the same flag in bulk so the
persisted state stays accurate for reporting. Both paths share
:func:`is_expired`.

At most one active lease per application is enforced by a partial unique
index; losing an insert race surfaces as :class:`AlreadyLocked`.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from jury.config import get_settings
from jury.errors import AlreadyLocked, InvalidValue, LockExpired, LockNotFound, NotFound, NotOwner, OutOfRange
from jury.models import LOCK_TYPES, Application, ApplicationLock
from jury.utils import utcnow

log = logging.getLogger(__name__)


@dataclass
class LockStatus:
    application_id: int
    is_locked: bool
    judge_id: int | None = None
    user_id: int | None = None
    lock_type: str | None = None
    locked_at: datetime | None = None
    expires_at: datetime | None = None
    time_remaining: int = 0

    def held_by(self, judge_id: int) -> bool:
        return self.is_locked and self.judge_id == judge_id


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


def is_expired(lock: ApplicationLock, now: datetime | None = None) -> bool:
    return (now or utcnow()) > lock.expires_at


def _deactivate(session: Session, lock: ApplicationLock) -> bool:
    result = session.execute(
        update(ApplicationLock)
        .where(ApplicationLock.id == lock.id, ApplicationLock.is_active.is_(True))
        .values(is_active=False)
    )
    return result.rowcount == 1


def resolve(session: Session, lock: ApplicationLock | None, now: datetime | None = None) -> ApplicationLock | None:
    """Return *lock* if it is live, else release it and return None.

    Caller must commit.
    """
    if lock is None or not lock.is_active:
        return None
    if not is_expired(lock, now):
        return lock
    if _deactivate(session, lock):
        log.warning(
            "Lock %s on application %s (judge %s) expired at %s, released",
            lock.id, lock.application_id, lock.judge_id, lock.expires_at,
        )
    return None


def _find_active(session: Session, application_id: int) -> ApplicationLock | None:
    return session.scalars(
        select(ApplicationLock).where(
            ApplicationLock.application_id == application_id,
            ApplicationLock.is_active.is_(True),
        )
    ).first()


def _live_lock(session: Session, application_id: int, now: datetime) -> ApplicationLock | None:
    return resolve(session, _find_active(session, application_id), now)


def _already_locked(application_id: int, lock: ApplicationLock | None, now: datetime) -> AlreadyLocked:
    if lock is None:
        return AlreadyLocked(application_id)
    return AlreadyLocked(
        application_id,
        judge_id=lock.judge_id,
        user_id=lock.user_id,
        expires_at=lock.expires_at,
        time_remaining=lock.time_remaining_minutes(now),
    )


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def acquire_lock(
    session: Session,
    application_id: int,
    judge_id: int,
    user_id: int,
    *,
    lock_type: str = "review",
    session_id: str | None = None,
    duration_minutes: int | None = None,
    now: datetime | None = None,
) -> ApplicationLock:
    """Take the review lease on an application for *duration_minutes*.

    Re-acquiring a lease the judge already holds returns it with
    ``last_activity`` refreshed. One attempt only: a lease held by another
    judge raises :class:`AlreadyLocked` immediately.
    """
    now = now or utcnow()
    if lock_type not in LOCK_TYPES:
        raise InvalidValue("lock_type", lock_type, list(LOCK_TYPES))
    if duration_minutes is None:
        duration_minutes = get_settings().lock_duration_minutes
    if duration_minutes <= 0:
        raise OutOfRange("duration_minutes", duration_minutes, 1)
    if session.get(Application, application_id) is None:
        raise NotFound("Application", application_id)

    existing = _live_lock(session, application_id, now)
    if existing is not None:
        if existing.judge_id != judge_id:
            session.commit()
            raise _already_locked(application_id, existing, now)
        existing.last_activity = now
        session.commit()
        return existing

    lock = ApplicationLock(
        application_id=application_id,
        judge_id=judge_id,
        user_id=user_id,
        lock_type=lock_type,
        session_id=session_id or secrets.token_hex(16),
        locked_at=now,
        expires_at=now + timedelta(minutes=duration_minutes),
        last_activity=now,
        is_active=True,
    )
    session.add(lock)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        winner = _find_active(session, application_id)
        log.warning(
            "Judge %s lost the lock race on application %s to judge %s",
            judge_id, application_id, winner.judge_id if winner else None,
        )
        raise _already_locked(application_id, winner, now) from None

    log.info(
        "Judge %s locked application %s until %s (%s)",
        judge_id, application_id, lock.expires_at, lock_type,
    )
    return lock


def release_lock(session: Session, application_id: int, judge_id: int) -> None:
    result = session.execute(
        update(ApplicationLock)
        .where(
            ApplicationLock.application_id == application_id,
            ApplicationLock.judge_id == judge_id,
            ApplicationLock.is_active.is_(True),
        )
        .values(is_active=False)
    )
    if result.rowcount == 0:
        session.rollback()
        raise LockNotFound(application_id, judge_id)
    session.commit()
    log.info("Judge %s released lock on application %s", judge_id, application_id)


def check_lock_status(session: Session, application_id: int, now: datetime | None = None) -> LockStatus:
    now = now or utcnow()
    lock = _live_lock(session, application_id, now)
    session.commit()
    if lock is None:
        return LockStatus(application_id=application_id, is_locked=False)
    return LockStatus(
        application_id=application_id,
        is_locked=True,
        judge_id=lock.judge_id,
        user_id=lock.user_id,
        lock_type=lock.lock_type,
        locked_at=lock.locked_at,
        expires_at=lock.expires_at,
        time_remaining=lock.time_remaining_minutes(now),
    )


def held_lock(session: Session, application_id: int, judge_id: int, now: datetime | None = None) -> ApplicationLock:
    """Return the live lease *judge_id* holds on the application.

    Raises :class:`LockNotFound` when the judge holds none, and
    :class:`LockExpired` (after releasing it) when the lease ran out.
    """
    now = now or utcnow()
    lock = session.scalars(
        select(ApplicationLock).where(
            ApplicationLock.application_id == application_id,
            ApplicationLock.judge_id == judge_id,
            ApplicationLock.is_active.is_(True),
        )
    ).first()
    if lock is None:
        raise LockNotFound(application_id, judge_id)
    if resolve(session, lock, now) is None:
        session.commit()
        raise LockExpired(application_id, judge_id, lock.expires_at)
    return lock


def extend_lock(
    session: Session,
    application_id: int,
    judge_id: int,
    additional_minutes: int | None = None,
    now: datetime | None = None,
) -> ApplicationLock:
    now = now or utcnow()
    if additional_minutes is None:
        additional_minutes = get_settings().lock_extension_minutes
    if additional_minutes <= 0:
        raise OutOfRange("additional_minutes", additional_minutes, 1)
    lock = held_lock(session, application_id, judge_id, now)
    new_expiry = max(lock.expires_at, now) + timedelta(minutes=additional_minutes)
    result = session.execute(
        update(ApplicationLock)
        .where(ApplicationLock.id == lock.id, ApplicationLock.is_active.is_(True))
        .values(expires_at=new_expiry, last_activity=now)
    )
    if result.rowcount == 0:
        session.rollback()
        raise LockNotFound(application_id, judge_id)
    session.commit()
    session.refresh(lock)
    log.info("Judge %s extended lock on application %s to %s", judge_id, application_id, new_expiry)
    return lock


def touch_lock(session: Session, application_id: int, judge_id: int, now: datetime | None = None) -> ApplicationLock:
    """Ownership check plus activity ping for a judge working under a lease."""
    now = now or utcnow()
    lock = _find_active(session, application_id)
    if lock is None:
        raise LockNotFound(application_id)
    if is_expired(lock, now):
        resolve(session, lock, now)
        session.commit()
        if lock.judge_id == judge_id:
            raise LockExpired(application_id, judge_id, lock.expires_at)
        raise LockNotFound(application_id)
    if lock.judge_id != judge_id:
        raise NotOwner("Lock", lock.id, judge_id, lock.judge_id)
    lock.last_activity = now
    session.commit()
    return lock


def get_judge_active_locks(session: Session, judge_id: int, now: datetime | None = None) -> list[ApplicationLock]:
    now = now or utcnow()
    candidates = session.scalars(
        select(ApplicationLock)
        .where(ApplicationLock.judge_id == judge_id, ApplicationLock.is_active.is_(True))
        .order_by(ApplicationLock.locked_at.desc())
    ).all()
    live = [lock for lock in candidates if resolve(session, lock, now) is not None]
    session.commit()
    return live


def cleanup_expired_locks(session: Session, now: datetime | None = None) -> int:
    """Deactivate every active lease past its expiry. Returns the count."""
    now = now or utcnow()
    result = session.execute(
        update(ApplicationLock)
        .where(ApplicationLock.is_active.is_(True), ApplicationLock.expires_at < now)
        .values(is_active=False)
    )
    session.commit()
    if result.rowcount:
        log.info("Released %d expired locks", result.rowcount)
    return result.rowcount
