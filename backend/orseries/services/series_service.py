# Overview: Service-layer operations for OR series; registry lookups, number formatting, and admin management.

"""
Series Registry

================================================================================
PURPOSE: Single source of truth for series configuration and validity windows
================================================================================

ACTIVE SERIES:
    A series serves allocations on date D when it is active, not soft-deleted,
    and effective_from <= D <= effective_to (open-ended when effective_to is
    NULL). Exactly one series must match; zero or several matches raise
    NoActiveSeriesError. Ambiguity is never resolved by picking the first row.

FORMAT TEMPLATES:
    {PREFIX}     series prefix ("" when unset)
    {YEAR}       4-digit year of the as-of date
    {MONTH}      2-digit month of the as-of date
    {NUMBER}     raw number, unpadded
    {NUMBER:n}   raw number, zero-padded to n digits (1 <= n <= 12)

    Templates are parsed once into segments and rendered in a single pass.
    Substituted values are never rescanned, so a prefix such as "NUMBER" or
    "{NUMBER}" is emitted literally.

BOUNDS:
    A padded template caps end_number at the width's capacity (10**n - 1).
    Lowering end_number below the highest issued number, or past the start
    of a cashier's offset band, is rejected at write time.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from functools import lru_cache

from flask import current_app

from ..extensions import db
from ..errors import (
    NoActiveSeriesError,
    SeriesConfigError,
    SeriesNotFoundError,
    SeriesRangeConflictError,
)
from ..models import IssuedNumber, NumberSeries, SeriesUserCounter
from ..time_utils import today, to_iso_date, utcnow
from ..validation import (
    MAX_SERIES_NUMBER,
    ConflictError,
    ModelValidationPolicy,
    enforce_rules_series,
    validate_payload,
)
from .concurrency import run_with_retry


PLACEHOLDERS = {"PREFIX", "YEAR", "MONTH", "NUMBER"}
MAX_NUMBER_WIDTH = 12
DEFAULT_FORMAT = "{PREFIX}{NUMBER:10}"

_TOKEN_RE = re.compile(r"\{([A-Za-z_]+)(?::(\d+))?\}")


SERIES_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "series_name", "prefix", "start_number", "end_number", "format",
        "is_active", "effective_from", "effective_to", "notes",
    },
    required_on_create={"series_name", "start_number", "effective_from"},
)

SERIES_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "series_name", "prefix", "start_number", "end_number", "format",
        "is_active", "effective_from", "effective_to", "notes",
    },
)


# =============================================================================
# Format templates
# =============================================================================

@dataclass(frozen=True)
class FormatSegment:
    kind: str  # "LITERAL" or a placeholder name
    text: str = ""
    width: int | None = None


@lru_cache(maxsize=256)
def parse_format(template: str) -> tuple[FormatSegment, ...]:
    """
    Parse a format template into literal and placeholder segments.

    Raises:
        SeriesConfigError: unknown placeholder, width on a non-NUMBER
            placeholder, width out of range, or not exactly one NUMBER.
    """
    if not template:
        raise SeriesConfigError("format template cannot be blank")

    segments: list[FormatSegment] = []
    number_count = 0
    pos = 0

    for match in _TOKEN_RE.finditer(template):
        if match.start() > pos:
            segments.append(FormatSegment("LITERAL", text=template[pos:match.start()]))

        name = match.group(1).upper()
        width_raw = match.group(2)

        if name not in PLACEHOLDERS:
            raise SeriesConfigError(
                f"Unknown placeholder '{match.group(0)}'. "
                f"Allowed: {', '.join('{' + p + '}' for p in sorted(PLACEHOLDERS))}"
            )

        width = None
        if width_raw is not None:
            if name != "NUMBER":
                raise SeriesConfigError(f"Only {{NUMBER}} accepts a width, got '{match.group(0)}'")
            width = int(width_raw)
            if width < 1 or width > MAX_NUMBER_WIDTH:
                raise SeriesConfigError(
                    f"NUMBER width must be between 1 and {MAX_NUMBER_WIDTH}, got {width}"
                )

        if name == "NUMBER":
            number_count += 1

        segments.append(FormatSegment(name, width=width))
        pos = match.end()

    if pos < len(template):
        segments.append(FormatSegment("LITERAL", text=template[pos:]))

    if number_count != 1:
        raise SeriesConfigError(
            f"format must contain exactly one {{NUMBER}} placeholder, found {number_count}"
        )

    return tuple(segments)


def number_width(template: str) -> int | None:
    for seg in parse_format(template):
        if seg.kind == "NUMBER":
            return seg.width
    return None


def format_number(series: NumberSeries, raw_number: int, as_of: date | None = None) -> str:
    """
    Render raw_number through the series template.

    Deterministic: the same (series, raw_number, as_of) always yields the same string.
    """
    as_of = as_of or today()
    out = []
    for seg in parse_format(series.format):
        if seg.kind == "LITERAL":
            out.append(seg.text)
        elif seg.kind == "PREFIX":
            out.append(series.prefix or "")
        elif seg.kind == "YEAR":
            out.append(f"{as_of.year:04d}")
        elif seg.kind == "MONTH":
            out.append(f"{as_of.month:02d}")
        elif seg.width:
            out.append(str(raw_number).zfill(seg.width))
        else:
            out.append(str(raw_number))
    return "".join(out)


def _normalize_end_number(template: str, end_number: int | None) -> int | None:
    """
    Fit end_number to the template's printable capacity.

    Padded templates default a missing end_number to the capacity and cap
    larger values (with a warning) so every issued number renders at full width.
    """
    width = number_width(template)
    if width is None:
        return end_number

    capacity = 10 ** width - 1
    if end_number is None:
        return capacity
    if end_number > capacity:
        current_app.logger.warning(
            "end_number %s exceeds capacity of format %r; capped to %s",
            end_number, template, capacity,
        )
        return capacity
    return end_number


# =============================================================================
# Registry lookups
# =============================================================================

def get_series(series_id: int, *, include_deleted: bool = False) -> NumberSeries:
    query = db.session.query(NumberSeries).filter(NumberSeries.id == series_id)
    if not include_deleted:
        query = query.filter(NumberSeries.deleted_at.is_(None))
    series = query.first()
    if series is None:
        raise SeriesNotFoundError(f"Series {series_id} not found")
    return series


def _effective_on(query, as_of: date):
    return query.filter(
        NumberSeries.effective_from <= as_of,
        db.or_(NumberSeries.effective_to.is_(None), NumberSeries.effective_to >= as_of),
    )


def get_active_series(as_of: date | None = None) -> NumberSeries:
    """
    Return the one series serving allocations on as_of (default: today).

    Raises:
        NoActiveSeriesError: zero or more than one series match.
    """
    as_of = as_of or today()
    query = db.session.query(NumberSeries).filter(
        NumberSeries.is_active.is_(True),
        NumberSeries.deleted_at.is_(None),
    )
    matches = _effective_on(query, as_of).order_by(NumberSeries.id).all()

    if not matches:
        raise NoActiveSeriesError(
            f"No active OR series is effective on {as_of.isoformat()}. Please contact administrator."
        )
    if len(matches) > 1:
        names = ", ".join(f"{s.series_name} (id={s.id})" for s in matches)
        raise NoActiveSeriesError(
            f"Ambiguous OR series configuration on {as_of.isoformat()}: {len(matches)} active series match: {names}"
        )
    return matches[0]


def list_series(*, active_only: bool = False, include_deleted: bool = False) -> list[NumberSeries]:
    query = db.session.query(NumberSeries)
    if active_only:
        query = query.filter(NumberSeries.is_active.is_(True))
    if not include_deleted:
        query = query.filter(NumberSeries.deleted_at.is_(None))
    return query.order_by(NumberSeries.effective_from.desc(), NumberSeries.id.desc()).all()


def has_reached_limit(series: NumberSeries) -> bool:
    return series.has_reached_limit()


def usage_percentage(series: NumberSeries) -> float:
    return series.usage_percentage()


def is_near_limit(series: NumberSeries) -> bool:
    return series.is_near_limit(current_app.config.get("OR_NEAR_LIMIT_PERCENT", 90))


def remaining_numbers(series: NumberSeries) -> int | None:
    """Numbers left before end_number (None when unbounded)."""
    return series.remaining_numbers()


def get_series_statistics(series: NumberSeries) -> dict:
    status_counts = dict(
        db.session.query(IssuedNumber.status, db.func.count(IssuedNumber.id))
        .filter(IssuedNumber.series_id == series.id)
        .group_by(IssuedNumber.status)
        .all()
    )
    counter_count = (
        db.session.query(db.func.count(SeriesUserCounter.id))
        .filter(SeriesUserCounter.series_id == series.id)
        .scalar()
    )
    return {
        "id": series.id,
        "series_name": series.series_name,
        "is_active": series.is_active,
        "current_number": series.current_number,
        "start_number": series.start_number,
        "end_number": series.end_number,
        "issued_count": series.issued_count(),
        "generated_count": status_counts.get("generated", 0),
        "used_count": status_counts.get("used", 0),
        "voided_count": status_counts.get("voided", 0),
        "cashier_count": counter_count or 0,
        "usage_percentage": round(usage_percentage(series), 2),
        "remaining_numbers": remaining_numbers(series),
        "is_near_limit": is_near_limit(series),
        "has_reached_limit": has_reached_limit(series),
        "effective_from": to_iso_date(series.effective_from),
        "effective_to": to_iso_date(series.effective_to),
    }


def check_series_near_limit(as_of: date | None = None) -> dict | None:
    """Statistics of the active series when it is near its limit, else None."""
    try:
        series = get_active_series(as_of)
    except NoActiveSeriesError:
        return None
    if is_near_limit(series):
        return get_series_statistics(series)
    return None


def find_range_conflict(
    start_number: int,
    end_number: int | None,
    *,
    exclude_series_id: int | None = None,
) -> NumberSeries | None:
    """First non-deleted series whose numeric range overlaps [start, end] (None = unbounded)."""
    query = db.session.query(NumberSeries).filter(
        NumberSeries.deleted_at.is_(None),
        db.or_(NumberSeries.end_number.is_(None), NumberSeries.end_number >= start_number),
    )
    if end_number is not None:
        query = query.filter(NumberSeries.start_number <= end_number)
    if exclude_series_id is not None:
        query = query.filter(NumberSeries.id != exclude_series_id)
    return query.order_by(NumberSeries.id).first()


def suggest_range(range_size: int = 1_000_000_000) -> dict:
    """Next free numeric range after the highest bounded series."""
    if range_size < 1:
        raise SeriesConfigError("range_size must be >= 1")

    highest_end = (
        db.session.query(db.func.max(NumberSeries.end_number))
        .filter(NumberSeries.deleted_at.is_(None))
        .scalar()
    )
    start = (highest_end or 0) + 1
    end = min(start + range_size - 1, MAX_SERIES_NUMBER)
    return {"start_number": start, "end_number": end}


# =============================================================================
# Administration
# =============================================================================

def _windows_overlap(a: NumberSeries, b: NumberSeries) -> bool:
    if a.effective_to is not None and a.effective_to < b.effective_from:
        return False
    if b.effective_to is not None and b.effective_to < a.effective_from:
        return False
    return True


def _supersede_overlapping(series: NumberSeries) -> list[int]:
    """Deactivate other active series whose effective windows overlap this one."""
    others = (
        db.session.query(NumberSeries)
        .filter(
            NumberSeries.is_active.is_(True),
            NumberSeries.deleted_at.is_(None),
            NumberSeries.id != series.id,
        )
        .all()
    )
    superseded = []
    for other in others:
        if _windows_overlap(series, other):
            other.is_active = False
            superseded.append(other.id)
    if superseded:
        current_app.logger.info(
            "Series %s supersedes previously active series %s", series.id, superseded
        )
    return superseded


def create_series(payload: dict, *, created_by_user_id: int | None = None) -> NumberSeries:
    """
    Create a series from an admin payload.

    Raises:
        ValidationError: bad field types, bounds, or dates
        SeriesConfigError: invalid format template
        SeriesRangeConflictError: numeric range overlaps another series
    """
    patch = validate_payload(
        model=NumberSeries, payload=payload, policy=SERIES_CREATE_POLICY, partial=False
    )
    patch["format"] = patch.get("format") or DEFAULT_FORMAT
    parse_format(patch["format"])
    patch["end_number"] = _normalize_end_number(patch["format"], patch.get("end_number"))
    enforce_rules_series(patch)

    conflict = find_range_conflict(patch["start_number"], patch["end_number"])
    if conflict:
        raise SeriesRangeConflictError(
            f"Range conflicts with existing series: {conflict.series_name} "
            f"({conflict.start_number} - {conflict.end_number or 'unbounded'})"
        )

    series = NumberSeries(
        **patch,
        current_number=patch["start_number"] - 1,
        created_by_user_id=created_by_user_id,
    )
    db.session.add(series)
    db.session.flush()

    if series.is_active:
        _supersede_overlapping(series)

    db.session.commit()
    current_app.logger.info(
        "Created OR series %s (id=%s, range=%s-%s, active=%s)",
        series.series_name, series.id, series.start_number, series.end_number, series.is_active,
    )
    return series


def _check_bounds_cover_counters(series: NumberSeries, start_number: int, end_number: int | None) -> None:
    """
    New bounds must still contain every issued number and every cashier offset.

    current_number only counts issuance, so a cashier working a higher band
    can hold numbers far above it.
    """
    if end_number is not None:
        highest_issued = (
            db.session.query(db.func.max(IssuedNumber.actual_number))
            .filter(IssuedNumber.series_id == series.id)
            .scalar()
        ) or 0
        floor = max(series.current_number, highest_issued)
        if end_number < floor:
            raise SeriesConfigError(
                f"end_number {end_number} is below numbers already issued in series {series.id} "
                f"(highest {floor})"
            )

    for counter in db.session.query(SeriesUserCounter).filter_by(series_id=series.id):
        if counter.start_offset < start_number - 1 or (
            end_number is not None and counter.start_offset + 1 > end_number
        ):
            raise SeriesConfigError(
                f"Range {start_number}-{end_number or 'unbounded'} leaves the offset "
                f"{counter.start_offset} of user {counter.user_id} outside the series"
            )


def update_series(series_id: int, payload: dict) -> NumberSeries:
    """
    Update an existing series.

    Raises:
        SeriesConfigError: end_number below the highest issued number, a
            cashier offset left outside the new range, start_number changed
            after issuance, or an invalid template
        SeriesRangeConflictError: new range overlaps another series
    """
    patch = validate_payload(
        model=NumberSeries, payload=payload, policy=SERIES_UPDATE_POLICY, partial=True
    )

    def _op() -> NumberSeries:
        series = get_series(series_id)
        was_active = series.is_active

        values = {key: getattr(series, key) for key in SERIES_UPDATE_POLICY.writable_fields}
        values.update(patch)
        values["format"] = values.get("format") or DEFAULT_FORMAT
        parse_format(values["format"])
        if "format" in patch or "end_number" in patch:
            values["end_number"] = _normalize_end_number(values["format"], values.get("end_number"))
        enforce_rules_series(values)

        issued = series.issued_count()
        if values["start_number"] != series.start_number:
            if issued > 0:
                raise SeriesConfigError(
                    f"Cannot change start_number of series {series.id}: {issued} number(s) already issued"
                )
            series.current_number = values["start_number"] - 1

        _check_bounds_cover_counters(series, values["start_number"], values["end_number"])

        if values["start_number"] != series.start_number or values["end_number"] != series.end_number:
            conflict = find_range_conflict(
                values["start_number"], values["end_number"], exclude_series_id=series.id
            )
            if conflict:
                raise SeriesRangeConflictError(
                    f"Range conflicts with existing series: {conflict.series_name} "
                    f"({conflict.start_number} - {conflict.end_number or 'unbounded'})"
                )

        for key in SERIES_UPDATE_POLICY.writable_fields:
            setattr(series, key, values.get(key))

        if series.is_active and not was_active:
            _supersede_overlapping(series)

        db.session.commit()
        return series

    try:
        series = run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info("Updated OR series %s: %s", series.id, sorted(patch.keys()))
    return series


def activate_series(series_id: int) -> NumberSeries:
    """Activate a series; overlapping active series are deactivated (superseded)."""
    def _op() -> NumberSeries:
        series = get_series(series_id)
        series.is_active = True
        _supersede_overlapping(series)
        db.session.commit()
        return series

    series = run_with_retry(_op)
    current_app.logger.info("Activated OR series %s (%s)", series.id, series.series_name)
    return series


def deactivate_series(series_id: int) -> NumberSeries:
    def _op() -> NumberSeries:
        series = get_series(series_id)
        series.is_active = False
        db.session.commit()
        return series

    series = run_with_retry(_op)
    current_app.logger.info("Deactivated OR series %s (%s)", series.id, series.series_name)
    return series


def delete_series(series_id: int) -> NumberSeries:
    """
    Soft-delete a series (audit retention).

    Raises:
        ConflictError: the series has issued numbers
    """
    series = get_series(series_id)
    issued = series.issued_numbers.count()
    if issued:
        raise ConflictError(
            f"Cannot delete series {series.id}: {issued} OR number(s) were issued from it"
        )
    series.is_active = False
    series.deleted_at = utcnow()
    db.session.commit()
    current_app.logger.info("Soft-deleted OR series %s (%s)", series.id, series.series_name)
    return series
