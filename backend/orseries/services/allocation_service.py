# Overview: Service-layer operations for OR allocation; issues the next number for a cashier atomically.

"""
OR Number Allocator

================================================================================
PURPOSE: "Give me the next OR number for series S, user U" as one atomic unit
================================================================================

ALGORITHM (one DB transaction, retried as a whole):
    1. Load series                -> SeriesNotFoundError / SeriesInactiveError
    2. Series at its limit?       -> SeriesExhaustedError (hard stop, never wraps)
    3. Get-or-create the cashier's counter (row lock)
    4. raw = start_offset + current_number + 1
       raw past end_number or past the counter's band -> SeriesExhaustedError
    5. Guarded atomic bump of the series total:
           UPDATE ... SET current_number = current_number + 1
           WHERE current_number < end_number
       0 rows -> SeriesExhaustedError
    6. Format raw through the series template
    7. Advance the counter (version-checked)
    8. Record IssuedNumber(status="generated")
    9. Commit

FAILURE POLICY:
    Any error rolls the session back, so a failed call leaves no IssuedNumber,
    no counter advance, and no series increment. Lock/version conflicts are
    retried with exponential backoff; when the retries run out the caller gets
    AllocationContentionError (retryable). A unique violation on issued
    numbers means two bands overlap; it surfaces as NumberCollisionError.

CONTENTION:
    Different cashiers never touch each other's counter rows. They only meet on
    the series row for the single guarded UPDATE in step 5.
"""

from __future__ import annotations

from datetime import date

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import (
    AllocationContentionError,
    NumberCollisionError,
    SeriesExhaustedError,
    SeriesInactiveError,
)
from ..models import IssuedNumber, NumberSeries
from ..time_utils import today, utcnow
from ..validation import ValidationError
from .concurrency import RETRYABLE_ERRORS, run_with_retry
from . import counter_service, series_service


GENERATION_METHODS = {"auto", "manual"}


def _ensure_allocatable(series: NumberSeries, as_of: date) -> None:
    if not series.is_active:
        raise SeriesInactiveError(f"Series '{series.series_name}' (id={series.id}) is not active")
    if not series.is_effective_on(as_of):
        raise SeriesInactiveError(
            f"Series '{series.series_name}' (id={series.id}) is not effective on {as_of.isoformat()} "
            f"(effective {series.effective_from.isoformat()} to "
            f"{series.effective_to.isoformat() if series.effective_to else 'open'})"
        )


def _bump_series_total(series: NumberSeries) -> None:
    """Atomically increment the series total, refusing to pass end_number."""
    stmt = (
        update(NumberSeries)
        .where(NumberSeries.id == series.id)
        .values(
            current_number=NumberSeries.current_number + 1,
            version_id=NumberSeries.version_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if series.end_number is not None:
        stmt = stmt.where(NumberSeries.current_number < series.end_number)

    result = db.session.execute(stmt)
    if not result.rowcount:
        raise SeriesExhaustedError(
            f"Series '{series.series_name}' has reached its limit ({series.end_number})"
        )
    db.session.refresh(series)


def allocate(
    series_id: int,
    user_id: int,
    as_of: date | None = None,
    method: str = "auto",
    *,
    notes: str | None = None,
) -> IssuedNumber:
    """
    Issue the next OR number of a series to a cashier.

    Args:
        series_id: series to draw from
        user_id: issuing cashier
        as_of: business date for the effective window and {YEAR}/{MONTH} (default today)
        method: "auto" or "manual". Recorded on the row for attribution only;
            the number still comes from the cashier's counter. Check a
            hand-entered OR with issued_number_service.is_or_number_available.
        notes: free text stored on the issued number

    Returns:
        The IssuedNumber in status "generated"

    Raises:
        SeriesNotFoundError, SeriesInactiveError, SeriesExhaustedError,
        NumberCollisionError, AllocationContentionError
    """
    if method not in GENERATION_METHODS:
        raise ValidationError(
            f"Invalid generation method '{method}'. Must be one of: {', '.join(sorted(GENERATION_METHODS))}"
        )
    as_of = as_of or today()
    size = counter_service.band_size()

    def _op() -> IssuedNumber:
        # 1-2
        series = series_service.get_series(series_id)
        _ensure_allocatable(series, as_of)
        if series.has_reached_limit():
            raise SeriesExhaustedError(
                f"Series '{series.series_name}' has reached its limit ({series.end_number})"
            )

        # 3-4
        counter = counter_service.get_or_create_counter(series, user_id)
        raw = counter_service.next_number(counter)
        if series.end_number is not None and raw > series.end_number:
            raise SeriesExhaustedError(
                f"Next number {raw} for user {user_id} is past the series limit ({series.end_number})"
            )
        if raw > counter.band_last(size):
            raise SeriesExhaustedError(
                f"User {user_id} has used up the offset band "
                f"{counter.band_first()}-{counter.band_last(size)}; an administrator must reassign the offset"
            )

        # 5-7
        _bump_series_total(series)
        or_number = series_service.format_number(series, raw, as_of)
        counter_service.advance(counter)

        # 8
        issued = IssuedNumber(
            series_id=series.id,
            or_number=or_number,
            actual_number=raw,
            generated_by_user_id=user_id,
            generated_at=utcnow(),
            generation_method=method,
            status="generated",
            notes=notes,
            generation_metadata={
                "start_offset": counter.start_offset,
                "counter_position": counter.current_number,
                "as_of": as_of.isoformat(),
            },
        )
        db.session.add(issued)
        try:
            db.session.flush()
        except IntegrityError as exc:
            db.session.rollback()
            raise NumberCollisionError(
                f"OR number {or_number} (raw {raw}) was already issued in series {series.id}"
            ) from exc

        db.session.commit()
        return issued

    attempts = int(current_app.config.get("OR_ALLOCATE_RETRY_ATTEMPTS", 5))
    backoff = float(current_app.config.get("OR_ALLOCATE_RETRY_BACKOFF", 0.05))
    try:
        issued = run_with_retry(_op, attempts=attempts, backoff_base=backoff)
    except RETRYABLE_ERRORS as exc:
        db.session.rollback()
        current_app.logger.error(
            "OR allocation gave up after %s attempts (series=%s, user=%s): %s",
            attempts, series_id, user_id, exc,
        )
        raise AllocationContentionError(
            f"Could not allocate an OR number for series {series_id} after {attempts} attempts; retry later"
        ) from exc
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(
        "Generated OR number %s (raw=%s, series=%s, user=%s, method=%s, id=%s)",
        issued.or_number, issued.actual_number, issued.series_id, user_id, method, issued.id,
    )
    return issued


def allocate_for_active_series(
    user_id: int,
    as_of: date | None = None,
    method: str = "auto",
    *,
    notes: str | None = None,
) -> IssuedNumber:
    """Allocate from whichever series is active on as_of (NoActiveSeriesError otherwise)."""
    series = series_service.get_active_series(as_of)
    return allocate(series.id, user_id, as_of, method, notes=notes)


def preview_next_number(user_id: int, as_of: date | None = None) -> dict:
    """
    Estimate the cashier's next OR number in the active series without consuming it.

    Non-locking; the real allocation may differ (e.g., a first-time cashier
    racing another for the same band).
    """
    as_of = as_of or today()
    series = series_service.get_active_series(as_of)
    counter = counter_service.get_counter(series.id, user_id)

    if counter is not None:
        raw = counter.next_number()
    else:
        raw = counter_service.next_free_offset(series) + 1

    warning = None
    if series.has_reached_limit() or (series.end_number is not None and raw > series.end_number):
        warning = f"Series '{series.series_name}' has reached its limit ({series.end_number})"
    elif series_service.is_near_limit(series):
        warning = f"Series '{series.series_name}' is {series.usage_percentage():.1f}% used"

    return {
        "or_number": series_service.format_number(series, raw, as_of),
        "actual_number": raw,
        "series_id": series.id,
        "is_estimate": True,
        "has_counter": counter is not None,
        "offset": counter.start_offset if counter else None,
        "warning": warning,
    }
