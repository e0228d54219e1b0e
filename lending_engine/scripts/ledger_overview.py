#!/usr/bin/env python3
"""Ledger overview and integrity checks for the lending database."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "Equipment",
    "Borrowings",
    "GuestBorrowings",
    "Returns",
    "OtpSessions",
    "AuditLogs",
    "NotificationQueue",
]

# Borrowing statuses that hold units in the borrowed bucket.
HOLDING_STATUSES = ("approved", "released", "return_requested", "return_rejected")


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _holding_list() -> str:
    return ", ".join(f"'{status}'" for status in HOLDING_STATUSES)


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def run_ledger_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    items = _rows(
        engine,
        """
        SELECT EquipmentID, ItemCode, TotalQuantity, AvailableQuantity,
               BorrowedQuantity, MaintenanceQuantity, DisposalQuantity
        FROM Equipment
        ORDER BY EquipmentID
        """,
    )
    held = {
        int(row[0]): int(row[1] or 0)
        for row in _rows(
            engine,
            "SELECT EquipmentID, SUM(Quantity) FROM Borrowings "
            f"WHERE Status IN ({_holding_list()}) GROUP BY EquipmentID",
        )
    }
    for equipment_id, count in _rows(
        engine,
        "SELECT EquipmentID, COUNT(*) FROM GuestBorrowings WHERE Status = 'approved' GROUP BY EquipmentID",
    ):
        held[int(equipment_id)] = held.get(int(equipment_id), 0) + int(count or 0)

    for equipment_id, item_code, total, available, borrowed, maintenance, disposal in items:
        buckets = [int(available or 0), int(borrowed or 0), int(maintenance or 0), int(disposal or 0)]
        balanced = min(buckets) >= 0 and sum(buckets) == int(total or 0)
        results.append(
            CheckResult(
                f"ledger:{item_code}:sum",
                balanced,
                f"total={total} available={available} borrowed={borrowed} "
                f"maintenance={maintenance} disposal={disposal}",
            )
        )
        expected = held.get(int(equipment_id), 0)
        results.append(
            CheckResult(
                f"ledger:{item_code}:borrowed_matches_requests",
                expected == int(borrowed or 0),
                f"borrowed={borrowed} held_by_requests={expected}",
            )
        )
    return results


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    checks: list[CheckResult] = []

    orphan_returns = _scalar(
        engine,
        """
        SELECT COUNT(*)
        FROM Returns r
        LEFT JOIN Borrowings b ON b.BorrowingID = r.BorrowingID
        LEFT JOIN GuestBorrowings g ON g.GuestRequestID = r.GuestRequestID
        WHERE b.BorrowingID IS NULL AND g.GuestRequestID IS NULL
        """,
    )
    checks.append(
        CheckResult("returns:orphan_request", int(orphan_returns or 0) == 0, f"count={int(orphan_returns or 0)}")
    )

    stuck_returns = _scalar(
        engine,
        """
        SELECT COUNT(*)
        FROM Returns r
        JOIN Borrowings b ON b.BorrowingID = r.BorrowingID
        WHERE r.Status = 'pending' AND b.Status <> 'return_requested'
        """,
    )
    checks.append(
        CheckResult(
            "returns:pending_without_request",
            int(stuck_returns or 0) == 0,
            f"count={int(stuck_returns or 0)}",
        )
    )
    return checks


def collect_checks(engine: Engine) -> list[CheckResult]:
    existence = run_existence_checks(engine)
    if not all(row.ok for row in existence):
        return existence
    return existence + run_ledger_checks(engine) + run_integrity_checks(engine)


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    present = set(inspect(engine).get_table_names())
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_queue(engine: Engine) -> None:
    _print_section("Notification Queue")
    pending = _scalar(engine, "SELECT COUNT(*) FROM NotificationQueue WHERE SentAt IS NULL")
    failing = _scalar(
        engine,
        "SELECT COUNT(*) FROM NotificationQueue WHERE SentAt IS NULL AND LastError IS NOT NULL",
    )
    print(f"pending={int(pending or 0)} with_errors={int(failing or 0)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Lending ledger overview")
    parser.add_argument("--db-url", default=os.environ.get("LENDING_DB_URL", ""))
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("LENDING_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    results = collect_checks(engine)
    _print_results("Ledger Checks", results)
    if all(row.ok for row in run_existence_checks(engine)):
        _print_row_counts(engine)
        _print_queue(engine)
    return 0 if all(row.ok for row in results) else 1


if __name__ == "__main__":
    sys.exit(main())
