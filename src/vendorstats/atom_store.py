#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 KernelSight AI
"""
SQLite storage for reported atoms.
Handles connection setup, schema initialization and atom queries.
"""

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from .atoms import Atom

logger = logging.getLogger(__name__)


class AtomStore:
    """Manages the SQLite database that backs the sqlite sink."""

    def __init__(self, db_path: str = "data/vendorstats.db"):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._ensure_directory()
        self._connect()

    def _ensure_directory(self):
        """Create database directory if it doesn't exist."""
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Database directory: {db_dir.absolute()}")

    def _connect(self):
        """Establish database connection."""
        try:
            # Sinks are shared by the uevent thread and the cadence thread
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=NORMAL")
            logger.info(f"Connected to database: {self.db_path}")
        except sqlite3.Error as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    def init_schema(self):
        """Initialize database schema from SQL file."""
        schema_path = Path(__file__).parent / "schema.sql"
        if not schema_path.exists():
            raise FileNotFoundError(f"Schema file not found: {schema_path}")

        try:
            schema_sql = schema_path.read_text()
            with self._lock:
                self.conn.executescript(schema_sql)
                self.conn.commit()

            version = self.conn.execute(
                "SELECT version, description FROM schema_version ORDER BY version DESC LIMIT 1"
            ).fetchone()
            if version:
                logger.info(f"Schema version: {version['version']} - {version['description']}")

        except Exception as e:
            logger.error(f"Failed to initialize schema: {e}")
            raise

    def insert_atom(self, atom: Atom) -> int:
        """Insert one atom and commit. Returns the row id."""
        sql = """
            INSERT INTO reported_atoms
            (timestamp, atom_name, field_names_json, values_json)
            VALUES (?, ?, ?, ?)
        """
        params = (
            atom.timestamp,
            atom.name,
            json.dumps(list(atom.field_names)),
            json.dumps([v.to_dict() for v in atom.values]),
        )
        with self._lock:
            cursor = self.conn.execute(sql, params)
            self.conn.commit()
        return cursor.lastrowid

    def query_atoms(self, atom_name: Optional[str] = None,
                    since_timestamp: Optional[float] = None,
                    limit: int = 100) -> List[Dict[str, Any]]:
        """
        Query stored atoms, newest first.

        Args:
            atom_name: Only return atoms with this schema name
            since_timestamp: Only return atoms reported at or after this time
            limit: Maximum number of rows

        Returns:
            List of dicts with id, timestamp, atom, and a name -> value mapping
        """
        sql = "SELECT * FROM reported_atoms WHERE 1=1"
        params: List[Any] = []

        if atom_name:
            sql += " AND atom_name = ?"
            params.append(atom_name)
        if since_timestamp is not None:
            sql += " AND timestamp >= ?"
            params.append(since_timestamp)

        sql += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(max(1, int(limit)))

        rows = self.conn.execute(sql, params).fetchall()
        results = []
        for row in rows:
            names = json.loads(row['field_names_json'])
            values = [v['value'] for v in json.loads(row['values_json'])]
            results.append({
                'id': row['id'],
                'timestamp': row['timestamp'],
                'atom': row['atom_name'],
                'values': dict(zip(names, values)),
            })
        return results

    def get_atom_counts(self) -> Dict[str, int]:
        """Get number of stored rows per atom name."""
        rows = self.conn.execute(
            "SELECT atom_name, COUNT(*) AS n FROM reported_atoms GROUP BY atom_name"
        ).fetchall()
        return {row['atom_name']: row['n'] for row in rows}

    def close(self):
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Database connection closed")
