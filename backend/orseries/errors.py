# Overview: Typed error taxonomy for OR number series, counters, and issued numbers.

"""
Callers branch on the error class, never on message text:

- Lookup / configuration errors are surfaced directly and never retried.
- SeriesExhaustedError is a hard business stop (an administrator must open
  a new series).
- AllocationContentionError is the only transient error. It is raised after
  the bounded retry of an allocation gave up; the call is safe to retry.
"""

from __future__ import annotations


class OrSeriesError(Exception):
    """Base class for every OR numbering domain error."""

    retryable = False


# Lookup / configuration

class SeriesNotFoundError(OrSeriesError, LookupError):
    """No series with the given id (or it was soft-deleted)."""


class SeriesInactiveError(OrSeriesError):
    """Series exists but is inactive or outside its effective window."""


class NoActiveSeriesError(OrSeriesError):
    """Zero or more than one series is active for the requested date."""


class SeriesConfigError(OrSeriesError, ValueError):
    """Invalid series configuration (format template, bounds, dates)."""


class SeriesRangeConflictError(OrSeriesError):
    """Numeric range overlaps another series."""


# Business hard stop

class SeriesExhaustedError(OrSeriesError):
    """Series (or the cashier's band within it) has no numbers left."""


# Administrative

class OffsetCollisionError(OrSeriesError):
    """Offset band overlaps another counter or already issued numbers."""


class OffsetOutOfRangeError(OrSeriesError, ValueError):
    """Offset falls outside the series bounds."""


# Workflow

class IssuedNumberNotFoundError(OrSeriesError, LookupError):
    """No issued number with the given id."""


class InvalidTransitionError(OrSeriesError):
    """Issued number status change is not allowed (e.g. voiding a used OR)."""


class NumberCollisionError(OrSeriesError):
    """Raw number already issued in the series; counter bands overlap."""


# Transient

class AllocationContentionError(OrSeriesError):
    """Allocation kept losing lock/version races and the retries ran out."""

    retryable = True
