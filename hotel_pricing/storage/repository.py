"""
Repository pattern for data access.

Stores calculation records keyed by id, guarded by an optimistic version
check, and keeps override entries in an append-only ledger table.
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from hotel_pricing.core.calculation import Calculation
from hotel_pricing.core.errors import StaleApprovalWrite
from hotel_pricing.core.overrides import OverrideEntry

from .db import DEFAULT_DB_PATH, get_connection, transaction
from .models import from_record, to_record

logger = logging.getLogger(__name__)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the calculation and override ledger tables if they don't exist.

    The override_entry table is an append-only ledger. No UPDATE or DELETE
    operations should ever be performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS calculation (
                id TEXT PRIMARY KEY,
                hotel_name TEXT NOT NULL,
                approval_status TEXT NOT NULL,
                version INTEGER NOT NULL,
                input_hash TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                payload TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS override_entry (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                calculation_id TEXT NOT NULL REFERENCES calculation(id),
                field_name TEXT NOT NULL,
                previous_value TEXT NOT NULL,
                new_value TEXT NOT NULL,
                justification TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


class CalculationRepository:
    """Repository for storing and loading calculations.

    Writes after the first save must name the version they were based on;
    a write based on an outdated version is refused with StaleApprovalWrite.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def save(self, calculation: Calculation) -> None:
        """Insert a new calculation together with its ledger entries."""
        with transaction(self.db_path) as conn:
            conn.execute("""
                INSERT INTO calculation
                (id, hotel_name, approval_status, version, input_hash,
                 created_at, updated_at, payload)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                calculation.id,
                calculation.pricing_input.hotel_name,
                calculation.approval.status.value,
                calculation.version,
                calculation.input_hash,
                calculation.created_at.isoformat(),
                datetime.now().isoformat(),
                json.dumps(to_record(calculation)),
            ))
            for entry in calculation.overrides:
                _insert_entry(conn, calculation.id, entry)

    def update(self, calculation: Calculation, expected_version: int) -> None:
        """Store a new version of a calculation.

        Ledger entries the stored version does not have yet are appended.

        Args:
            calculation: New version of the calculation
            expected_version: Version the change was based on

        Raises:
            StaleApprovalWrite: If the stored version is not expected_version
            ValueError: If the new version does not move forward
        """
        if calculation.version <= expected_version:
            raise ValueError(
                f"New version {calculation.version} must be greater than {expected_version}"
            )

        with transaction(self.db_path) as conn:
            cursor = conn.execute("""
                UPDATE calculation
                SET hotel_name = ?, approval_status = ?, version = ?,
                    input_hash = ?, updated_at = ?, payload = ?
                WHERE id = ? AND version = ?
            """, (
                calculation.pricing_input.hotel_name,
                calculation.approval.status.value,
                calculation.version,
                calculation.input_hash,
                datetime.now().isoformat(),
                json.dumps(to_record(calculation)),
                calculation.id,
                expected_version,
            ))
            if cursor.rowcount == 0:
                row = conn.execute(
                    "SELECT version FROM calculation WHERE id = ?", (calculation.id,)
                ).fetchone()
                if row is None:
                    raise KeyError(f"Calculation not found: {calculation.id}")
                logger.warning(
                    "Refusing stale write to %s: based on version %s, stored version is %s",
                    calculation.id, expected_version, row[0],
                )
                raise StaleApprovalWrite(calculation.id, expected_version, row[0])

            stored = conn.execute(
                "SELECT COUNT(*) FROM override_entry WHERE calculation_id = ?", (calculation.id,)
            ).fetchone()[0]
            for entry in calculation.overrides[stored:]:
                _insert_entry(conn, calculation.id, entry)

    def get(self, calculation_id: str) -> Optional[Calculation]:
        """Load a calculation by id, None if it does not exist."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT payload FROM calculation WHERE id = ?", (calculation_id,)
            ).fetchone()
            if row is None:
                return None
            entries = _fetch_entries(conn, calculation_id)
            return from_record(json.loads(row[0]), entries)
        finally:
            conn.close()

    def list_recent(self, status: Optional[str] = None, limit: int = 20) -> List[Calculation]:
        """List calculations, most recently updated first.

        Args:
            status: Optional approval status filter
            limit: Maximum number of calculations to return
        """
        conn = get_connection(self.db_path)
        try:
            query = "SELECT id, payload FROM calculation"
            params = []
            if status:
                query += " WHERE approval_status = ?"
                params.append(status)
            query += " ORDER BY updated_at DESC LIMIT ?"
            params.append(limit)

            calculations = []
            for calculation_id, payload in conn.execute(query, params).fetchall():
                entries = _fetch_entries(conn, calculation_id)
                calculations.append(from_record(json.loads(payload), entries))
            return calculations
        finally:
            conn.close()


def fetch_override_entries(calculation_id: str, db_path: str = DEFAULT_DB_PATH) -> List[OverrideEntry]:
    """Fetch the override ledger of a calculation in insertion order.

    This is a read-only operation that preserves the append-only nature.
    """
    conn = get_connection(db_path)
    try:
        return _fetch_entries(conn, calculation_id)
    finally:
        conn.close()


def _insert_entry(conn, calculation_id: str, entry: OverrideEntry) -> None:
    conn.execute("""
        INSERT INTO override_entry
        (calculation_id, field_name, previous_value, new_value, justification, timestamp)
        VALUES (?, ?, ?, ?, ?, ?)
    """, (
        calculation_id,
        entry.field_name,
        str(entry.previous_value),
        str(entry.new_value),
        entry.justification,
        entry.timestamp.isoformat(),
    ))


def _fetch_entries(conn, calculation_id: str) -> List[OverrideEntry]:
    cursor = conn.execute("""
        SELECT field_name, previous_value, new_value, justification, timestamp
        FROM override_entry
        WHERE calculation_id = ?
        ORDER BY id ASC
    """, (calculation_id,))
    return [
        OverrideEntry(
            field_name=row[0],
            previous_value=Decimal(row[1]),
            new_value=Decimal(row[2]),
            justification=row[3],
            timestamp=datetime.fromisoformat(row[4]),
        )
        for row in cursor.fetchall()
    ]
