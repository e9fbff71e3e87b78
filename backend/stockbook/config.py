# backend/stockbook/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stockbook.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///stockbook.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Withdrawal strategy for stock taken without an explicit batch: "fefo" or "fifo"
    STOCK_ALLOCATION_POLICY = os.environ.get("STOCK_ALLOCATION_POLICY", "fefo")

    NOTIFICATION_RETENTION_DAYS = int(os.environ.get("NOTIFICATION_RETENTION_DAYS", "30"))

    # Lease length of the alert sweep advisory lock
    ALERT_SWEEP_LOCK_SECONDS = int(os.environ.get("ALERT_SWEEP_LOCK_SECONDS", "900"))

    # Ledger roles -> chart of accounts codes
    SYSTEM_ACCOUNT_CODES = {
        "cash": "1000",
        "bank": "1100",
        "accounts_receivable": "1200",
        "inventory": "1300",
        "tax_input": "1400",
        "accounts_payable": "2000",
        "tax_output": "2100",
        "sales_revenue": "4000",
        "sales_returns": "4100",
        "cost_of_goods_sold": "5000",
        "purchase_price_variance": "5100",
    }
