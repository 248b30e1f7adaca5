# backend/stockroom/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stockroom.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///stockroom.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Notification gateway: "sendgrid" in production, "log" for local development
    NOTIFICATION_BACKEND = os.environ.get("NOTIFICATION_BACKEND", "log")
    NOTIFICATION_TIMEOUT_SECONDS = float(os.environ.get("NOTIFICATION_TIMEOUT_SECONDS", "10"))
    SENDGRID_API_KEY = os.environ.get("SENDGRID_API_KEY", "")
    SENDGRID_FROM_EMAIL = os.environ.get("SENDGRID_FROM_EMAIL", "noreply@stockroom.local")
    SENDGRID_FROM_NAME = os.environ.get("SENDGRID_FROM_NAME", "Stockroom")
    SENDGRID_BASE_URL = os.environ.get("SENDGRID_BASE_URL", "https://api.sendgrid.com/v3")

    # How long an in-flight idempotent command keeps its key before a retry may reclaim it
    IDEMPOTENCY_LEASE_SECONDS = int(os.environ.get("IDEMPOTENCY_LEASE_SECONDS", "60"))
