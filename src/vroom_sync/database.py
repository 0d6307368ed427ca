"""
Database module for the local vehicle dataset using DuckDB.

This module stores users, their vehicles with every dependent record, and
the per-user sync state the engine reads and writes.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import duckdb

from .models import (
    ENTITY_TABLES,
    Dataset,
    SyncModel,
    SyncState,
    TableSpec,
    UserAccount,
)

logger = logging.getLogger(__name__)


# Row filter selecting the records owned by a user, one placeholder each
OWNED_SCOPE: Dict[str, str] = {
    "vehicles": "user_id = ?",
    "expenses": "vehicle_id IN (SELECT id FROM vehicles WHERE user_id = ?)",
    "financing": "vehicle_id IN (SELECT id FROM vehicles WHERE user_id = ?)",
    "financing_payments": (
        "financing_id IN (SELECT f.id FROM vehicle_financing f "
        "JOIN vehicles v ON f.vehicle_id = v.id WHERE v.user_id = ?)"
    ),
    "insurance": "vehicle_id IN (SELECT id FROM vehicles WHERE user_id = ?)",
}

SYNC_STATE_COLUMNS = list(SyncState.model_fields)


class VehicleDatabase:
    """
    Manages DuckDB database operations for the vehicle dataset.

    This class handles the connection lifecycle, schema creation, the
    per-user sync state, and the transactional bulk restore. Every public
    method holds an internal lock, so one instance may be shared by worker
    threads.
    """

    def __init__(self, db_path: Path):
        """
        Initialize database handle.

        Args:
            db_path: Path to the DuckDB database file
        """
        self.db_path = db_path
        self.conn: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()

    def __enter__(self) -> 'VehicleDatabase':
        """
        Context manager entry: open database connection and create schema.

        Returns:
            Self for use in with statement
        """
        try:
            self.conn = duckdb.connect(str(self.db_path))
            logger.info(f"Connected to database at {self.db_path}")
            self._create_schema()
            return self
        except Exception as e:
            logger.error(f"Failed to initialize database at {self.db_path}: {e}", exc_info=True)
            raise

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit: close database connection."""
        try:
            self.close()
        except Exception as e:
            logger.warning(f"Error while closing database connection: {e}", exc_info=True)

    def _require_conn(self) -> duckdb.DuckDBPyConnection:
        if self.conn is None:
            raise RuntimeError("Database connection not established")
        return self.conn

    def _create_schema(self) -> None:
        """
        Create the database schema if it doesn't exist.

        Entity tables carry NOT NULL constraints only. Identity is kept by
        the restore path, since DuckDB checks key constraints eagerly and a
        delete followed by a re-insert of the same id inside one
        transaction would be rejected.

        Raises:
            RuntimeError: If database connection is not established
        """
        conn = self._require_conn()

        statements = [
            """
            CREATE TABLE IF NOT EXISTS users (
                id VARCHAR NOT NULL PRIMARY KEY,
                email VARCHAR NOT NULL,
                display_name VARCHAR NOT NULL,
                remote_token VARCHAR
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS vehicles (
                id VARCHAR NOT NULL,
                user_id VARCHAR NOT NULL,
                make VARCHAR NOT NULL,
                model VARCHAR NOT NULL,
                year INTEGER NOT NULL,
                vehicle_type VARCHAR NOT NULL DEFAULT 'gas',
                license_plate VARCHAR,
                nickname VARCHAR,
                initial_mileage INTEGER,
                purchase_price DOUBLE,
                purchase_date TIMESTAMP,
                created_at TIMESTAMP,
                updated_at TIMESTAMP
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS expenses (
                id VARCHAR NOT NULL,
                vehicle_id VARCHAR NOT NULL,
                tags VARCHAR,
                category VARCHAR NOT NULL,
                amount DOUBLE NOT NULL,
                currency VARCHAR NOT NULL DEFAULT 'USD',
                date TIMESTAMP NOT NULL,
                mileage INTEGER,
                volume DOUBLE,
                charge DOUBLE,
                description VARCHAR,
                receipt_url VARCHAR,
                created_at TIMESTAMP,
                updated_at TIMESTAMP
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS vehicle_financing (
                id VARCHAR NOT NULL,
                vehicle_id VARCHAR NOT NULL,
                financing_type VARCHAR NOT NULL DEFAULT 'loan',
                provider VARCHAR NOT NULL,
                original_amount DOUBLE NOT NULL,
                current_balance DOUBLE NOT NULL,
                apr DOUBLE,
                term_months INTEGER NOT NULL,
                start_date TIMESTAMP NOT NULL,
                payment_amount DOUBLE NOT NULL,
                payment_frequency VARCHAR NOT NULL DEFAULT 'monthly',
                payment_day_of_month INTEGER,
                payment_day_of_week INTEGER,
                residual_value DOUBLE,
                mileage_limit INTEGER,
                excess_mileage_fee DOUBLE,
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                end_date TIMESTAMP,
                created_at TIMESTAMP,
                updated_at TIMESTAMP
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS vehicle_financing_payments (
                id VARCHAR NOT NULL,
                financing_id VARCHAR NOT NULL,
                payment_date TIMESTAMP NOT NULL,
                payment_amount DOUBLE NOT NULL,
                principal_amount DOUBLE NOT NULL,
                interest_amount DOUBLE NOT NULL,
                remaining_balance DOUBLE NOT NULL,
                payment_number INTEGER NOT NULL,
                payment_type VARCHAR NOT NULL DEFAULT 'standard',
                is_scheduled BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMP,
                updated_at TIMESTAMP
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS insurance_policies (
                id VARCHAR NOT NULL,
                vehicle_id VARCHAR NOT NULL,
                company VARCHAR NOT NULL,
                policy_number VARCHAR,
                total_cost DOUBLE NOT NULL,
                term_length_months INTEGER NOT NULL,
                start_date TIMESTAMP NOT NULL,
                end_date TIMESTAMP NOT NULL,
                monthly_cost DOUBLE NOT NULL,
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                created_at TIMESTAMP,
                updated_at TIMESTAMP
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS sync_state (
                user_id VARCHAR NOT NULL PRIMARY KEY,
                last_sync_date TIMESTAMP,
                last_backup_date TIMESTAMP,
                last_data_change_date TIMESTAMP,
                mirror_enabled BOOLEAN NOT NULL DEFAULT FALSE,
                archive_enabled BOOLEAN NOT NULL DEFAULT FALSE,
                sync_on_inactivity BOOLEAN NOT NULL DEFAULT TRUE,
                inactivity_delay_minutes INTEGER NOT NULL DEFAULT 5,
                archive_retention_count INTEGER NOT NULL DEFAULT 10,
                mirror_id VARCHAR,
                archive_folder_id VARCHAR,
                last_sync_error VARCHAR
            )
            """,
        ]

        try:
            for statement in statements:
                conn.execute(statement)
            logger.debug("Database schema created or verified")
        except Exception as e:
            logger.error(f"Failed to create database schema: {e}", exc_info=True)
            raise

    # Users

    def upsert_user(self, user: UserAccount) -> None:
        """
        Insert or update a user account.

        Args:
            user: The account to store
        """
        with self._lock:
            conn = self._require_conn()
            try:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO users (id, email, display_name, remote_token)
                    VALUES (?, ?, ?, ?)
                    """,
                    [user.id, user.email, user.display_name, user.remote_token]
                )
                logger.debug(f"Successfully upserted user {user.id}")
            except Exception as e:
                logger.error(f"Failed to upsert user {user.id}: {e}", exc_info=True)
                raise

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        """
        Retrieve a user account by id.

        Returns:
            The account if found, None otherwise
        """
        with self._lock:
            conn = self._require_conn()
            result = conn.execute(
                "SELECT id, email, display_name, remote_token FROM users WHERE id = ?",
                [user_id]
            ).fetchone()

        if result is None:
            logger.debug(f"No user found for id: {user_id}")
            return None

        return UserAccount(id=result[0], email=result[1], display_name=result[2],
                           remote_token=result[3])

    # Entities

    def insert_records(self, spec: TableSpec, records: Iterable[SyncModel]) -> int:
        """
        Append records of one entity type.

        Args:
            spec: Entity type of the records
            records: Records to insert

        Returns:
            Number of inserted records
        """
        with self._lock:
            return self._insert_records(self._require_conn(), spec, records)

    def insert_dataset(self, dataset: Dataset) -> None:
        """Append every record of a dataset, parents first."""
        with self._lock:
            for spec in ENTITY_TABLES:
                self.insert_records(spec, dataset.records(spec))

    def _insert_records(self, conn: duckdb.DuckDBPyConnection, spec: TableSpec,
                        records: Iterable[SyncModel]) -> int:
        rows = [[getattr(record, column) for column in spec.columns] for record in records]
        if not rows:
            return 0

        placeholders = ", ".join("?" for _ in spec.columns)
        insert_sql = f"INSERT INTO {spec.table} ({', '.join(spec.columns)}) VALUES ({placeholders})"
        conn.executemany(insert_sql, rows)
        logger.debug(f"Inserted {len(rows)} rows into {spec.table}")
        return len(rows)

    def count_vehicles(self, user_id: str) -> int:
        """Number of vehicles owned by a user."""
        with self._lock:
            conn = self._require_conn()
            result = conn.execute(
                "SELECT COUNT(*) FROM vehicles WHERE user_id = ?", [user_id]
            ).fetchone()
        return int(result[0]) if result else 0

    def load_dataset(self, user_id: str) -> Dataset:
        """
        Load every record owned by a user.

        Args:
            user_id: Owner of the records

        Returns:
            Dataset with each entity list sorted by id
        """
        with self._lock:
            conn = self._require_conn()
            try:
                loaded: Dict[str, List[SyncModel]] = {}
                for spec in ENTITY_TABLES:
                    select_sql = (
                        f"SELECT {', '.join(spec.columns)} FROM {spec.table} "
                        f"WHERE {OWNED_SCOPE[spec.key]} ORDER BY id"
                    )
                    rows = conn.execute(select_sql, [user_id]).fetchall()
                    loaded[spec.key] = [
                        spec.model(**dict(zip(spec.columns, row))) for row in rows
                    ]
            except Exception as e:
                logger.error(f"Failed to load dataset for user {user_id}: {e}", exc_info=True)
                raise

        return Dataset(**loaded)

    # Sync state

    def get_or_create_sync_state(self, user_id: str, inactivity_delay_minutes: int = 5,
                                 archive_retention_count: int = 10) -> SyncState:
        """
        Return the sync state of a user, creating the default row on first access.

        Args:
            user_id: Owner of the state
            inactivity_delay_minutes: Delay stored when the row is created
            archive_retention_count: Retention stored when the row is created
        """
        with self._lock:
            conn = self._require_conn()
            state = self._fetch_sync_state(conn, user_id)
            if state is not None:
                return state

            state = SyncState(
                user_id=user_id,
                inactivity_delay_minutes=inactivity_delay_minutes,
                archive_retention_count=archive_retention_count,
            )
            placeholders = ", ".join("?" for _ in SYNC_STATE_COLUMNS)
            conn.execute(
                f"INSERT INTO sync_state ({', '.join(SYNC_STATE_COLUMNS)}) VALUES ({placeholders})",
                [getattr(state, column) for column in SYNC_STATE_COLUMNS]
            )
            logger.info(f"Created sync state for user {user_id}")
            return state

    def get_sync_state(self, user_id: str) -> Optional[SyncState]:
        """Return the sync state of a user without creating it."""
        with self._lock:
            return self._fetch_sync_state(self._require_conn(), user_id)

    def _fetch_sync_state(self, conn: duckdb.DuckDBPyConnection,
                          user_id: str) -> Optional[SyncState]:
        result = conn.execute(
            f"SELECT {', '.join(SYNC_STATE_COLUMNS)} FROM sync_state WHERE user_id = ?",
            [user_id]
        ).fetchone()
        if result is None:
            return None
        return SyncState(**dict(zip(SYNC_STATE_COLUMNS, result)))

    def update_sync_state(self, user_id: str, /, **fields: Any) -> SyncState:
        """
        Update selected sync state columns of a user.

        Args:
            user_id: Owner of the state
            **fields: Column values to set

        Returns:
            The updated state

        Raises:
            ValueError: If a field is not a sync state column
        """
        unknown = set(fields) - set(SYNC_STATE_COLUMNS) | ({"user_id"} & set(fields))
        if unknown:
            raise ValueError(f"Unknown sync state fields: {sorted(unknown)}")

        with self._lock:
            conn = self._require_conn()
            self.get_or_create_sync_state(user_id)
            if fields:
                assignments = ", ".join(f"{column} = ?" for column in fields)
                try:
                    conn.execute(
                        f"UPDATE sync_state SET {assignments} WHERE user_id = ?",
                        [*fields.values(), user_id]
                    )
                except Exception as e:
                    logger.error(f"Failed to update sync state for user {user_id}: {e}",
                                 exc_info=True)
                    raise
            state = self._fetch_sync_state(conn, user_id)

        logger.debug(f"Updated sync state for user {user_id}: {sorted(fields)}")
        return state

    # Restore

    def apply_restore(self, user_id: str, dataset: Dataset, replace: bool) -> Dict[str, int]:
        """
        Write a restored dataset in a single transaction.

        With replace, every record the user owns is deleted first. Otherwise
        only records whose ids appear in the dataset are deleted, so local
        records missing from the dataset survive. Deletes run children
        first, inserts run parents first. Any failure rolls the whole
        transaction back and re-raises.

        Args:
            user_id: Owner of the records
            dataset: Records to write
            replace: Whether to drop all owned records first

        Returns:
            Number of inserted records per entity type
        """
        with self._lock:
            conn = self._require_conn()
            conn.begin()
            try:
                self._reject_foreign_ids(conn, user_id, dataset)

                for spec in reversed(ENTITY_TABLES):
                    scope = OWNED_SCOPE[spec.key]
                    if replace:
                        conn.execute(f"DELETE FROM {spec.table} WHERE {scope}", [user_id])
                        continue
                    ids = [[record.id, user_id] for record in dataset.records(spec)]
                    if ids:
                        conn.executemany(
                            f"DELETE FROM {spec.table} WHERE id = ? AND {scope}", ids
                        )

                inserted = {}
                for spec in ENTITY_TABLES:
                    inserted[spec.key] = self._insert_records(conn, spec, dataset.records(spec))

                conn.commit()
            except Exception as e:
                conn.rollback()
                logger.error(f"Restore transaction rolled back for user {user_id}: {e}",
                             exc_info=True)
                raise

        logger.info(f"Restore transaction committed for user {user_id} "
                    f"({'replace' if replace else 'merge'}): {inserted}")
        return inserted

    def _reject_foreign_ids(self, conn: duckdb.DuckDBPyConnection, user_id: str,
                            dataset: Dataset) -> None:
        """Raise if an incoming id is already used by a record outside the user's scope."""
        for spec in ENTITY_TABLES:
            ids = [record.id for record in dataset.records(spec)]
            if not ids:
                continue
            placeholders = ", ".join("?" for _ in ids)
            taken = conn.execute(
                f"SELECT id FROM {spec.table} WHERE id IN ({placeholders}) "
                f"AND NOT ({OWNED_SCOPE[spec.key]})",
                [*ids, user_id]
            ).fetchall()
            if taken:
                raise ValueError(
                    f"Ids in {spec.table} belong to another user: "
                    f"{sorted(row[0] for row in taken)}"
                )

    def close(self) -> None:
        """
        Close the database connection.

        This method can be called explicitly or will be called automatically
        when using the context manager.
        """
        with self._lock:
            if self.conn is not None:
                try:
                    self.conn.close()
                    logger.debug("Database connection closed")
                except Exception as e:
                    logger.warning(f"Error closing database connection: {e}", exc_info=True)
                finally:
                    self.conn = None
