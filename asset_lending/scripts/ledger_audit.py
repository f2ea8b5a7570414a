#!/usr/bin/env python3
"""Ledger and checkout consistency checks for the asset lending store."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "Users",
    "Stations",
    "Assets",
    "Checkouts",
    "WalletLedgerEntries",
    "RewardLedgerEntries",
    "PaymentTransactions",
    "MobilityTrips",
    "Incidents",
    "AuditLogs",
    "NotificationQueue",
]

# Cached balances are Numeric(18, 2); anything under half a cent is rounding noise.
BALANCE_TOLERANCE = 0.005


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _count_result(name: str, count) -> CheckResult:
    count = int(count or 0)
    return CheckResult(name, count == 0, f"count={count}")


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def run_checks(engine: Engine) -> list[CheckResult]:
    checks: list[CheckResult] = []

    checks.append(
        _count_result(
            "assets:reference_without_in_use",
            _scalar(
                engine,
                """
                SELECT COUNT(*) FROM Assets
                WHERE (Status = 'in_use' AND (CurrentCheckoutID IS NULL OR CurrentHolderID IS NULL))
                   OR (Status <> 'in_use' AND (CurrentCheckoutID IS NOT NULL OR CurrentHolderID IS NOT NULL))
                """,
            ),
        )
    )

    checks.append(
        _count_result(
            "assets:in_use_without_ongoing_checkout",
            _scalar(
                engine,
                """
                SELECT COUNT(*) FROM Assets a
                LEFT JOIN Checkouts c
                  ON c.CheckoutID = a.CurrentCheckoutID AND c.Status = 'ongoing' AND c.AssetID = a.AssetID
                WHERE a.Status = 'in_use' AND c.CheckoutID IS NULL
                """,
            ),
        )
    )

    checks.append(
        _count_result(
            "checkouts:multiple_ongoing_per_asset",
            _scalar(
                engine,
                """
                SELECT COUNT(*) FROM (
                    SELECT AssetID FROM Checkouts
                    WHERE Status = 'ongoing'
                    GROUP BY AssetID
                    HAVING COUNT(*) > 1
                ) d
                """,
            ),
        )
    )

    checks.append(
        _count_result(
            "checkouts:multiple_ongoing_bikes_per_user",
            _scalar(
                engine,
                """
                SELECT COUNT(*) FROM (
                    SELECT UserID FROM Checkouts
                    WHERE Status = 'ongoing' AND AssetKind = 'bike'
                    GROUP BY UserID
                    HAVING COUNT(*) > 1
                ) d
                """,
            ),
        )
    )

    checks.append(
        _count_result(
            "wallet:ledger_sum_mismatch",
            _scalar(
                engine,
                """
                SELECT COUNT(*) FROM Users u
                LEFT JOIN (
                    SELECT UserID, SUM(Amount) AS Total FROM WalletLedgerEntries GROUP BY UserID
                ) l ON l.UserID = u.UserID
                WHERE ABS(COALESCE(u.WalletBalance, 0) - COALESCE(l.Total, 0)) > :tolerance
                """,
                {"tolerance": BALANCE_TOLERANCE},
            ),
        )
    )

    checks.append(
        _count_result(
            "wallet:last_balance_after_mismatch",
            _scalar(
                engine,
                """
                SELECT COUNT(*) FROM Users u
                JOIN WalletLedgerEntries e ON e.UserID = u.UserID
                WHERE e.EntryID = (SELECT MAX(EntryID) FROM WalletLedgerEntries x WHERE x.UserID = u.UserID)
                  AND ABS(COALESCE(u.WalletBalance, 0) - e.BalanceAfter) > :tolerance
                """,
                {"tolerance": BALANCE_TOLERANCE},
            ),
        )
    )

    checks.append(
        _count_result(
            "rewards:points_sum_mismatch",
            _scalar(
                engine,
                """
                SELECT COUNT(*) FROM Users u
                LEFT JOIN (
                    SELECT UserID, SUM(Amount) AS Total FROM RewardLedgerEntries
                    WHERE LedgerKind = 'points'
                    GROUP BY UserID
                ) l ON l.UserID = u.UserID
                WHERE ABS(COALESCE(u.GreenPoints, 0) - COALESCE(l.Total, 0)) > :tolerance
                """,
                {"tolerance": BALANCE_TOLERANCE},
            ),
        )
    )

    checks.append(
        _count_result(
            "payments:completed_topup_without_credit",
            _scalar(
                engine,
                """
                SELECT COUNT(*) FROM PaymentTransactions p
                LEFT JOIN WalletLedgerEntries e
                  ON e.UserID = p.UserID AND e.EntryType = 'deposit_topup' AND e.ReferenceID = p.ExternalCode
                WHERE p.Direction = 'topup' AND p.Status = 'completed' AND e.EntryID IS NULL
                """,
            ),
        )
    )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine, present: set[str]) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Asset lending ledger audit")
    parser.add_argument("--db-url", default=os.environ.get("ASSET_LENDING_DB_URL", ""))
    parser.add_argument("--counts", action="store_true", help="also print row counts per table")
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("ASSET_LENDING_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        # Force a quick connectivity check first.
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    existence = run_existence_checks(engine)
    _print_results("Table Existence", existence)
    if not all(row.ok for row in existence):
        return 1

    integrity = run_checks(engine)
    _print_results("Integrity Checks", integrity)
    if args.counts:
        _print_row_counts(engine, {row.name.split(":", 1)[1] for row in existence if row.ok})
    return 0 if all(row.ok for row in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
