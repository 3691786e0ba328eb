# backend/stockledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stockledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///stockledger.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Concurrency: how many times a stock mutation is re-run after losing a
    # version race or hitting a locked database, and the base backoff (seconds).
    STOCK_MUTATION_RETRY_ATTEMPTS = int(os.environ.get("STOCK_MUTATION_RETRY_ATTEMPTS", "5"))
    STOCK_MUTATION_RETRY_BACKOFF = float(os.environ.get("STOCK_MUTATION_RETRY_BACKOFF", "0.05"))

    # Upper bound for ?limit= on history and list endpoints
    HISTORY_MAX_PAGE_SIZE = int(os.environ.get("HISTORY_MAX_PAGE_SIZE", "100"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
