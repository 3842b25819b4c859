# backend/orseries/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/orseries.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///orseries.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Width of the number band handed to each cashier within a series.
    # Auto-assigned offsets are start_number - 1 + k * OR_OFFSET_BAND_SIZE.
    OR_OFFSET_BAND_SIZE = int(os.environ.get("OR_OFFSET_BAND_SIZE", "100000"))

    # Bounded retry of the whole allocation on lock/version conflicts
    OR_ALLOCATE_RETRY_ATTEMPTS = int(os.environ.get("OR_ALLOCATE_RETRY_ATTEMPTS", "5"))
    OR_ALLOCATE_RETRY_BACKOFF = float(os.environ.get("OR_ALLOCATE_RETRY_BACKOFF", "0.05"))

    # Usage percentage at which a series is reported as near its limit
    OR_NEAR_LIMIT_PERCENT = float(os.environ.get("OR_NEAR_LIMIT_PERCENT", "90"))
