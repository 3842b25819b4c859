# Overview: Service-layer operations for issued OR numbers; enforces the generated/used/voided lifecycle.

"""
Number Lifecycle Tracker

STATE MACHINE:
    generated -> used      (bound to a finalized billing transaction)
    generated -> voided    (discarded before use; the number is never reused)

RULES (NON-NEGOTIABLE):
1. used and voided are terminal
2. No backwards movement
3. A void always records who, when, and why (reason is required)

Transitions act on one already-created row: a row lock plus the version_id
check are enough; there is no coordination with the allocator.
"""

from __future__ import annotations

from typing import Literal

from flask import current_app

from ..extensions import db
from ..errors import InvalidTransitionError, IssuedNumberNotFoundError
from ..models import IssuedNumber
from ..time_utils import utcnow
from ..validation import ValidationError
from .concurrency import lock_for_update, run_with_retry


VALID_STATUSES = {"generated", "used", "voided"}
IssuedStatus = Literal["generated", "used", "voided"]

_VALID_TRANSITIONS = {
    ("generated", "used"),
    ("generated", "voided"),
}


def validate_status(status: str) -> None:
    if status not in VALID_STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'. Must be one of: {', '.join(sorted(VALID_STATUSES))}"
        )


def can_transition(from_status: str, to_status: str) -> bool:
    validate_status(from_status)
    validate_status(to_status)
    return (from_status, to_status) in _VALID_TRANSITIONS


def get_issued_number(issued_number_id: int, *, lock: bool = False) -> IssuedNumber:
    query = db.session.query(IssuedNumber).filter(IssuedNumber.id == issued_number_id)
    if lock:
        query = lock_for_update(query)
    issued = query.first()
    if issued is None:
        raise IssuedNumberNotFoundError(f"Issued OR number {issued_number_id} not found")
    return issued


def is_or_number_available(or_number: str, *, exclude_issued_number_id: int | None = None) -> bool:
    """
    True when no issued number (in any status, any series) carries this OR string.

    Used to check a hand-entered OR before accepting it. A voided number stays
    taken: it is never reissued.
    """
    query = db.session.query(IssuedNumber.id).filter(IssuedNumber.or_number == or_number.strip())
    if exclude_issued_number_id is not None:
        query = query.filter(IssuedNumber.id != exclude_issued_number_id)
    return query.first() is None


def _require_transition(issued: IssuedNumber, to_status: str) -> None:
    if not can_transition(issued.status, to_status):
        raise InvalidTransitionError(
            f"Cannot mark OR {issued.or_number} (id={issued.id}) as '{to_status}': "
            f"current status is '{issued.status}', must be 'generated'"
        )


def mark_used(issued_number_id: int, transaction_id: int) -> IssuedNumber:
    """
    Bind a generated OR number to a finalized transaction (generated -> used).

    Raises:
        IssuedNumberNotFoundError: no such issued number
        InvalidTransitionError: status is not 'generated'
    """
    if transaction_id is None:
        raise ValidationError("transaction_id is required")

    def _op() -> IssuedNumber:
        issued = get_issued_number(issued_number_id, lock=True)
        _require_transition(issued, "used")

        issued.status = "used"
        issued.transaction_id = transaction_id
        issued.used_at = utcnow()
        db.session.commit()
        return issued

    try:
        issued = run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(
        "Marked OR number %s as used (id=%s, transaction=%s)",
        issued.or_number, issued.id, transaction_id,
    )
    return issued


def mark_voided(issued_number_id: int, voided_by_user_id: int, reason: str) -> IssuedNumber:
    """
    Void a generated OR number (generated -> voided). The number is not freed.

    Raises:
        ValidationError: blank reason
        IssuedNumberNotFoundError: no such issued number
        InvalidTransitionError: status is not 'generated'
    """
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A void reason is required")
    if len(reason) > 255:
        raise ValidationError("void_reason exceeds max length 255")

    def _op() -> IssuedNumber:
        issued = get_issued_number(issued_number_id, lock=True)
        _require_transition(issued, "voided")

        issued.status = "voided"
        issued.voided_at = utcnow()
        issued.voided_by_user_id = voided_by_user_id
        issued.void_reason = reason
        db.session.commit()
        return issued

    try:
        issued = run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.warning(
        "Voided OR number %s (id=%s, by=%s): %s",
        issued.or_number, issued.id, voided_by_user_id, reason,
    )
    return issued


def list_issued_numbers(
    *,
    series_id: int | None = None,
    status: str | None = None,
    user_id: int | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[IssuedNumber], int]:
    """Read-only projection for reporting; newest first."""
    if status is not None:
        validate_status(status)
        query = {
            "generated": IssuedNumber.scope_generated,
            "used": IssuedNumber.scope_used,
            "voided": IssuedNumber.scope_voided,
        }[status]()
    else:
        query = db.session.query(IssuedNumber)

    if series_id is not None:
        query = query.filter(IssuedNumber.series_id == series_id)
    if user_id is not None:
        query = query.filter(IssuedNumber.generated_by_user_id == user_id)

    total = query.count()

    if offset < 0:
        offset = 0
    if limit < 1:
        limit = 1
    if limit > 500:
        limit = 500

    rows = query.order_by(IssuedNumber.id.desc()).offset(offset).limit(limit).all()
    return rows, total
