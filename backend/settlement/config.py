# backend/settlement/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/settlement.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///settlement.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("SETTLEMENT_LOG_LEVEL", "INFO")

    # Seeded into payment_methods by `flask settlement init-db --seed-methods`
    DEFAULT_PAYMENT_METHODS = ("Cash", "Card", "Bank Transfer", "Cheque")

    # Pseudo-method for refund payouts that stay on the customer's account
    STORE_CREDIT_METHOD = "Credits"

    # Compared case-insensitively; requires a cheque number on the line
    CHEQUE_METHOD = "cheque"

    WARRANTY_VOID_REASON_MIN_LENGTH = 10
    DEFAULT_DUE_DATE_DAYS = int(os.environ.get("DEFAULT_DUE_DATE_DAYS", "30"))

    INVOICE_PREFIX = "INV"
    RETURN_PREFIX = "RTN"
    REPAIR_PREFIX = "REP"

    # Owner of repairs raised from internal damage logs
    INTERNAL_CUSTOMER_NAME = "Internal"
