"""Persistent state: subjects, modifier registry, and resource ledgers."""
from __future__ import annotations

import json
import logging
import math
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .config import Settings, get_settings
from .errors import ConfigurationError
from .models import (
    ActiveModifier,
    HistoryAction,
    ModifierDefinition,
    ModifierHistoryRecord,
    ModifierKind,
    ModifierSource,
    ModifierTarget,
    ResourceLedger,
    ResourceType,
    StackingBehaviour,
    Subject,
)
from .modifiers import validate_definition
from .storage import ensure_schema, ensure_utc, from_iso, reading, to_iso, transaction

logger = logging.getLogger(__name__)

_DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS subjects (
    id TEXT PRIMARY KEY,
    display_name TEXT NOT NULL,
    faction TEXT NOT NULL DEFAULT 'neutral',
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS modifier_definitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL DEFAULT '',
    target TEXT NOT NULL,
    sub_target TEXT,
    magnitude REAL NOT NULL,
    kind TEXT NOT NULL,
    stacking_group TEXT,
    stacking_behaviour TEXT NOT NULL DEFAULT 'additive'
);
CREATE TABLE IF NOT EXISTS active_modifiers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    subject_id TEXT NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
    modifier_id INTEGER NOT NULL REFERENCES modifier_definitions(id),
    started_at TEXT NOT NULL,
    expires_at TEXT,
    source TEXT NOT NULL,
    source_id TEXT,
    CHECK (expires_at IS NULL OR expires_at > started_at)
);
CREATE INDEX IF NOT EXISTS idx_active_modifiers_subject
    ON active_modifiers (subject_id);
CREATE INDEX IF NOT EXISTS idx_active_modifiers_expires
    ON active_modifiers (expires_at) WHERE expires_at IS NOT NULL;
CREATE TABLE IF NOT EXISTS modifier_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    subject_id TEXT NOT NULL,
    modifier_id INTEGER NOT NULL,
    action TEXT NOT NULL,
    occurred_at TEXT NOT NULL,
    magnitude REAL NOT NULL,
    source TEXT NOT NULL,
    source_id TEXT,
    previous_state TEXT,
    reason TEXT
);
CREATE INDEX IF NOT EXISTS idx_modifier_history_subject
    ON modifier_history (subject_id, occurred_at);
CREATE TABLE IF NOT EXISTS resource_ledgers (
    subject_id TEXT NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
    resource TEXT NOT NULL,
    amount INTEGER NOT NULL DEFAULT 0,
    storage_cap INTEGER NOT NULL,
    accumulated REAL NOT NULL DEFAULT 0,
    accumulator_cap INTEGER NOT NULL,
    last_produced_at TEXT,
    PRIMARY KEY (subject_id, resource)
);
CREATE TABLE IF NOT EXISTS production_sources (
    subject_id TEXT NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
    source_id TEXT NOT NULL,
    resource TEXT NOT NULL,
    rate_per_hour REAL NOT NULL,
    PRIMARY KEY (subject_id, source_id, resource)
);
CREATE TABLE IF NOT EXISTS units (
    subject_id TEXT NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
    unit TEXT NOT NULL,
    quantity INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (subject_id, unit)
);
"""

_DEFINITION_COLUMNS = (
    "id, name, description, target, sub_target, magnitude, kind, "
    "stacking_group, stacking_behaviour"
)
_ACTIVE_COLUMNS = "id, subject_id, modifier_id, started_at, expires_at, source, source_id"
_LEDGER_COLUMNS = (
    "resource, amount, storage_cap, accumulated, accumulator_cap, last_produced_at"
)


def _whole_units(value: float) -> int:
    """Round down to whole units, tolerating float noise just below an integer."""

    return int(math.floor(value + 1e-9))


def _row_to_definition(row: Sequence) -> ModifierDefinition:
    try:
        return ModifierDefinition(
            id=int(row[0]),
            name=row[1],
            description=row[2] or "",
            target=ModifierTarget(row[3]),
            sub_target=row[4],
            magnitude=float(row[5]),
            kind=ModifierKind(row[6]),
            stacking_group=row[7],
            stacking_behaviour=StackingBehaviour(row[8]),
        )
    except ValueError as exc:
        raise ConfigurationError(f"Stored modifier definition {row[1]!r} is malformed: {exc}") from exc


def _row_to_active(row: Sequence) -> ActiveModifier:
    return ActiveModifier(
        id=int(row[0]),
        subject_id=row[1],
        modifier_id=int(row[2]),
        started_at=from_iso(row[3]),
        expires_at=from_iso(row[4]),
        source=ModifierSource(row[5]),
        source_id=row[6],
    )


def _row_to_ledger(row: Sequence) -> ResourceLedger:
    return ResourceLedger(
        resource=ResourceType(row[0]),
        amount=int(row[1]),
        storage_cap=int(row[2]),
        accumulated=float(row[3]),
        accumulator_cap=int(row[4]),
        last_produced_at=from_iso(row[5]),
    )


def _active_state(active: ActiveModifier) -> Dict[str, object]:
    return {
        "started_at": to_iso(active.started_at),
        "expires_at": to_iso(active.expires_at) if active.expires_at else None,
        "source": ModifierSource(active.source).value,
        "source_id": active.source_id,
    }


class EmpireState:
    """High level interface for working with persistent state.

    Every multi-row mutation runs inside a single ``BEGIN IMMEDIATE``
    transaction, so changes to one subject's modifiers or balances are never
    partially visible.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        settings: Optional[Settings] = None,
        busy_timeout: float = 5.0,
    ) -> None:
        self._db_path = db_path
        self._settings = settings or get_settings()
        self._timeout = busy_timeout
        ensure_schema(self._db_path, _DB_SCHEMA)

    @property
    def db_path(self) -> Path:
        return self._db_path

    # Subjects ---------------------------------------------------------
    def create_subject(
        self,
        subject_id: str,
        display_name: str,
        *,
        now: datetime,
        faction: str = "neutral",
        faction_modifiers: Sequence[ModifierDefinition] = (),
    ) -> Subject:
        """Create a subject with a ledger for every resource.

        ``faction_modifiers`` are applied as faction-sourced modifiers in the
        same transaction, so a failure leaves no trace of the subject.
        """

        settings = self._settings
        now = ensure_utc(now)
        try:
            with transaction(self._db_path, self._timeout) as conn:
                conn.execute(
                    "INSERT INTO subjects (id, display_name, faction, created_at) VALUES (?, ?, ?, ?)",
                    (subject_id, display_name, faction, to_iso(now)),
                )
                conn.executemany(
                    """INSERT INTO resource_ledgers
                           (subject_id, resource, amount, storage_cap, accumulated, accumulator_cap)
                           VALUES (?, ?, ?, ?, 0, ?)""",
                    [
                        (
                            subject_id,
                            resource.value,
                            settings.starting_balance,
                            settings.default_storage_cap,
                            settings.default_accumulator_cap,
                        )
                        for resource in ResourceType
                    ],
                )
                for definition in faction_modifiers:
                    if definition.id is None:
                        raise ValueError(f"Definition {definition.name} has not been stored")
                    self._insert_active(
                        conn,
                        ActiveModifier(
                            subject_id=subject_id,
                            modifier_id=definition.id,
                            started_at=now,
                            source=ModifierSource.FACTION,
                            source_id=faction,
                        ),
                        reason="Initial faction modifiers",
                    )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"Subject {subject_id} already exists") from exc
        logger.info(
            "Created subject %s (%s) with %d faction modifiers",
            subject_id,
            faction,
            len(faction_modifiers),
        )
        return Subject(id=subject_id, display_name=display_name, faction=faction, created_at=now)

    def get_subject(self, subject_id: str) -> Optional[Subject]:
        with reading(self._db_path, self._timeout) as conn:
            row = conn.execute(
                "SELECT id, display_name, faction, created_at FROM subjects WHERE id = ?",
                (subject_id,),
            ).fetchone()
        if not row:
            return None
        return Subject(id=row[0], display_name=row[1], faction=row[2], created_at=from_iso(row[3]))

    def all_subjects(self) -> List[Subject]:
        with reading(self._db_path, self._timeout) as conn:
            rows = conn.execute(
                "SELECT id, display_name, faction, created_at FROM subjects ORDER BY id"
            ).fetchall()
        return [
            Subject(id=row[0], display_name=row[1], faction=row[2], created_at=from_iso(row[3]))
            for row in rows
        ]

    def set_subject_faction(self, subject_id: str, faction: str) -> str:
        """Update the faction column and return the previous faction."""

        with transaction(self._db_path, self._timeout) as conn:
            previous = self._require_subject(conn, subject_id)
            conn.execute("UPDATE subjects SET faction = ? WHERE id = ?", (faction, subject_id))
        return previous

    @staticmethod
    def _require_subject(conn: sqlite3.Connection, subject_id: str) -> str:
        row = conn.execute("SELECT faction FROM subjects WHERE id = ?", (subject_id,)).fetchone()
        if not row:
            raise ValueError(f"Unknown subject {subject_id}")
        return row[0]

    # Modifier definitions ---------------------------------------------
    def upsert_modifier_definition(self, definition: ModifierDefinition) -> ModifierDefinition:
        """Insert or update a definition keyed by its unique name."""

        validate_definition(definition)
        with transaction(self._db_path, self._timeout) as conn:
            conn.execute(
                """INSERT INTO modifier_definitions
                       (name, description, target, sub_target, magnitude, kind, stacking_group, stacking_behaviour)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT(name) DO UPDATE SET
                           description = excluded.description,
                           target = excluded.target,
                           sub_target = excluded.sub_target,
                           magnitude = excluded.magnitude,
                           kind = excluded.kind,
                           stacking_group = excluded.stacking_group,
                           stacking_behaviour = excluded.stacking_behaviour""",
                (
                    definition.name,
                    definition.description,
                    ModifierTarget(definition.target).value,
                    definition.sub_target,
                    float(definition.magnitude),
                    ModifierKind(definition.kind).value,
                    definition.stacking_group,
                    StackingBehaviour(definition.stacking_behaviour).value,
                ),
            )
            row = conn.execute(
                f"SELECT {_DEFINITION_COLUMNS} FROM modifier_definitions WHERE name = ?",
                (definition.name,),
            ).fetchone()
        return _row_to_definition(row)

    def get_modifier_definition(self, modifier_id: int) -> Optional[ModifierDefinition]:
        with reading(self._db_path, self._timeout) as conn:
            row = conn.execute(
                f"SELECT {_DEFINITION_COLUMNS} FROM modifier_definitions WHERE id = ?",
                (modifier_id,),
            ).fetchone()
        return _row_to_definition(row) if row else None

    def get_modifier_definition_by_name(self, name: str) -> Optional[ModifierDefinition]:
        with reading(self._db_path, self._timeout) as conn:
            row = conn.execute(
                f"SELECT {_DEFINITION_COLUMNS} FROM modifier_definitions WHERE name = ?",
                (name,),
            ).fetchone()
        return _row_to_definition(row) if row else None

    def list_modifier_definitions(self, prefix: Optional[str] = None) -> List[ModifierDefinition]:
        query = f"SELECT {_DEFINITION_COLUMNS} FROM modifier_definitions"
        params: List[object] = []
        if prefix:
            # substr comparison keeps '_' in the prefix literal
            query += " WHERE substr(name, 1, ?) = ?"
            params.extend([len(prefix), prefix])
        query += " ORDER BY name"
        with reading(self._db_path, self._timeout) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_definition(row) for row in rows]

    def definitions_by_id(self, ids: Optional[Iterable[int]] = None) -> Dict[int, ModifierDefinition]:
        with reading(self._db_path, self._timeout) as conn:
            return self._definitions_by_id(conn, ids)

    @staticmethod
    def _definitions_by_id(
        conn: sqlite3.Connection, ids: Optional[Iterable[int]] = None
    ) -> Dict[int, ModifierDefinition]:
        query = f"SELECT {_DEFINITION_COLUMNS} FROM modifier_definitions"
        params: List[int] = []
        if ids is not None:
            params = sorted(set(ids))
            if not params:
                return {}
            query += f" WHERE id IN ({', '.join('?' for _ in params)})"
        rows = conn.execute(query, params).fetchall()
        definitions = [_row_to_definition(row) for row in rows]
        return {definition.id: definition for definition in definitions}

    # Active modifiers -------------------------------------------------
    def apply_modifier(
        self,
        subject_id: str,
        modifier_id: int,
        *,
        source: ModifierSource,
        started_at: datetime,
        expires_at: Optional[datetime] = None,
        source_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ActiveModifier:
        with transaction(self._db_path, self._timeout) as conn:
            active = self._insert_active(
                conn,
                ActiveModifier(
                    subject_id=subject_id,
                    modifier_id=modifier_id,
                    started_at=started_at,
                    expires_at=expires_at,
                    source=ModifierSource(source),
                    source_id=source_id,
                ),
                reason=reason,
            )
        logger.info(
            "Applied modifier %s to %s (source=%s, expires=%s)",
            modifier_id,
            subject_id,
            active.source.value,
            expires_at.isoformat() if expires_at else "never",
        )
        return active

    def _insert_active(
        self,
        conn: sqlite3.Connection,
        active: ActiveModifier,
        *,
        reason: Optional[str],
    ) -> ActiveModifier:
        active.started_at = ensure_utc(active.started_at)
        if active.expires_at is not None:
            active.expires_at = ensure_utc(active.expires_at)
        if active.expires_at is not None and active.expires_at <= active.started_at:
            raise ValueError("Modifier expiry must be strictly after its start")
        self._require_subject(conn, active.subject_id)
        magnitude = self._magnitude(conn, active.modifier_id)
        cursor = conn.execute(
            """INSERT INTO active_modifiers
                   (subject_id, modifier_id, started_at, expires_at, source, source_id)
                   VALUES (?, ?, ?, ?, ?, ?)""",
            (
                active.subject_id,
                active.modifier_id,
                to_iso(active.started_at),
                to_iso(active.expires_at) if active.expires_at else None,
                ModifierSource(active.source).value,
                active.source_id,
            ),
        )
        active.id = int(cursor.lastrowid)
        self._append_history(
            conn,
            active,
            HistoryAction.APPLIED,
            occurred_at=active.started_at,
            magnitude=magnitude,
            reason=reason,
        )
        return active

    @staticmethod
    def _magnitude(conn: sqlite3.Connection, modifier_id: int) -> float:
        row = conn.execute(
            "SELECT magnitude FROM modifier_definitions WHERE id = ?", (modifier_id,)
        ).fetchone()
        if not row:
            raise ValueError(f"Unknown modifier definition {modifier_id}")
        return float(row[0])

    @staticmethod
    def _append_history(
        conn: sqlite3.Connection,
        active: ActiveModifier,
        action: HistoryAction,
        *,
        occurred_at: datetime,
        magnitude: float,
        previous_state: Optional[Dict[str, object]] = None,
        reason: Optional[str] = None,
    ) -> None:
        conn.execute(
            """INSERT INTO modifier_history
                   (subject_id, modifier_id, action, occurred_at, magnitude, source, source_id, previous_state, reason)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                active.subject_id,
                active.modifier_id,
                action.value,
                to_iso(occurred_at),
                magnitude,
                ModifierSource(active.source).value,
                active.source_id,
                json.dumps(previous_state) if previous_state is not None else None,
                reason,
            ),
        )

    def _load_active(self, conn: sqlite3.Connection, active_id: int) -> Optional[ActiveModifier]:
        row = conn.execute(
            f"SELECT {_ACTIVE_COLUMNS} FROM active_modifiers WHERE id = ?", (active_id,)
        ).fetchone()
        return _row_to_active(row) if row else None

    def _delete_active(
        self,
        conn: sqlite3.Connection,
        active: ActiveModifier,
        action: HistoryAction,
        *,
        now: datetime,
        reason: Optional[str],
    ) -> None:
        conn.execute("DELETE FROM active_modifiers WHERE id = ?", (active.id,))
        self._append_history(
            conn,
            active,
            action,
            occurred_at=now,
            magnitude=self._magnitude(conn, active.modifier_id),
            previous_state=_active_state(active),
            reason=reason,
        )

    def get_active_modifier(self, active_id: int) -> Optional[ActiveModifier]:
        with reading(self._db_path, self._timeout) as conn:
            return self._load_active(conn, active_id)

    def remove_active_modifier(
        self, active_id: int, *, now: datetime, reason: Optional[str] = None
    ) -> Optional[ActiveModifier]:
        """Delete an active modifier; returns the removed record or ``None``."""

        with transaction(self._db_path, self._timeout) as conn:
            active = self._load_active(conn, active_id)
            if active is None:
                return None
            self._delete_active(conn, active, HistoryAction.REMOVED, now=now, reason=reason)
        logger.info("Removed modifier %s from %s", active.modifier_id, active.subject_id)
        return active

    def update_active_modifier_expiry(
        self,
        active_id: int,
        expires_at: Optional[datetime],
        *,
        now: datetime,
        reason: Optional[str] = None,
    ) -> Optional[ActiveModifier]:
        now = ensure_utc(now)
        expires_at = ensure_utc(expires_at) if expires_at is not None else None
        with transaction(self._db_path, self._timeout) as conn:
            active = self._load_active(conn, active_id)
            if active is None:
                return None
            if expires_at is not None and expires_at <= active.started_at:
                raise ValueError("Modifier expiry must be strictly after its start")
            previous = _active_state(active)
            conn.execute(
                "UPDATE active_modifiers SET expires_at = ? WHERE id = ?",
                (to_iso(expires_at) if expires_at else None, active_id),
            )
            active.expires_at = expires_at
            self._append_history(
                conn,
                active,
                HistoryAction.UPDATED,
                occurred_at=now,
                magnitude=self._magnitude(conn, active.modifier_id),
                previous_state=previous,
                reason=reason,
            )
        return active

    def list_active_modifiers(
        self,
        subject_id: str,
        now: Optional[datetime] = None,
        *,
        source: Optional[ModifierSource] = None,
    ) -> List[ActiveModifier]:
        """Active modifiers of a subject; expired rows are skipped when ``now`` is given."""

        with reading(self._db_path, self._timeout) as conn:
            return self._list_active(conn, subject_id, now, source)

    @staticmethod
    def _list_active(
        conn: sqlite3.Connection,
        subject_id: str,
        now: Optional[datetime],
        source: Optional[ModifierSource] = None,
    ) -> List[ActiveModifier]:
        query = f"SELECT {_ACTIVE_COLUMNS} FROM active_modifiers WHERE subject_id = ?"
        params: List[object] = [subject_id]
        if now is not None:
            query += " AND (expires_at IS NULL OR expires_at > ?)"
            params.append(to_iso(now))
        if source is not None:
            query += " AND source = ?"
            params.append(ModifierSource(source).value)
        query += " ORDER BY id"
        return [_row_to_active(row) for row in conn.execute(query, params).fetchall()]

    def modifier_snapshot(
        self, subject_id: str, now: datetime
    ) -> Tuple[List[ActiveModifier], Dict[int, ModifierDefinition]]:
        """Consistent read of a subject's live modifiers and their definitions."""

        with reading(self._db_path, self._timeout) as conn:
            conn.execute("BEGIN")
            try:
                active = self._list_active(conn, subject_id, now)
                definitions = self._definitions_by_id(conn, [a.modifier_id for a in active])
            finally:
                conn.execute("COMMIT")
        return active, definitions

    def expire_active_modifier(
        self, active_id: int, *, now: datetime, reason: Optional[str] = None
    ) -> Optional[ActiveModifier]:
        """Delete one modifier if the registry confirms it has expired."""

        with transaction(self._db_path, self._timeout) as conn:
            active = self._load_active(conn, active_id)
            if active is None or active.is_active(now):
                return None
            self._delete_active(
                conn, active, HistoryAction.EXPIRED, now=now, reason=reason or "Expired"
            )
        return active

    def expire_modifiers(self, now: datetime, subject_id: Optional[str] = None) -> List[str]:
        """Garbage-collect expired modifiers; returns the affected subject ids."""

        query = (
            f"SELECT {_ACTIVE_COLUMNS} FROM active_modifiers "
            "WHERE expires_at IS NOT NULL AND expires_at <= ?"
        )
        params: List[object] = [to_iso(now)]
        if subject_id is not None:
            query += " AND subject_id = ?"
            params.append(subject_id)
        with transaction(self._db_path, self._timeout) as conn:
            expired = [_row_to_active(row) for row in conn.execute(query, params).fetchall()]
            for active in expired:
                self._delete_active(conn, active, HistoryAction.EXPIRED, now=now, reason="Expired")
        subjects = sorted({active.subject_id for active in expired})
        if expired:
            logger.info("Expired %d modifiers across %d subjects", len(expired), len(subjects))
        return subjects

    def replace_source_modifiers(
        self,
        subject_id: str,
        source: ModifierSource,
        definitions: Sequence[ModifierDefinition],
        *,
        now: datetime,
        source_id: Optional[str] = None,
        reason: Optional[str] = None,
        faction: Optional[str] = None,
    ) -> List[ActiveModifier]:
        """Swap every modifier from ``source`` for fresh ones in one transaction.

        When ``faction`` is given the subject's faction column is updated in
        the same transaction.
        """

        source = ModifierSource(source)
        applied: List[ActiveModifier] = []
        with transaction(self._db_path, self._timeout) as conn:
            self._require_subject(conn, subject_id)
            for active in self._list_active(conn, subject_id, None, source):
                self._delete_active(conn, active, HistoryAction.REMOVED, now=now, reason=reason)
            for definition in definitions:
                if definition.id is None:
                    raise ValueError(f"Definition {definition.name} has not been stored")
                applied.append(
                    self._insert_active(
                        conn,
                        ActiveModifier(
                            subject_id=subject_id,
                            modifier_id=definition.id,
                            started_at=now,
                            source=source,
                            source_id=source_id,
                        ),
                        reason=reason,
                    )
                )
            if faction is not None:
                conn.execute("UPDATE subjects SET faction = ? WHERE id = ?", (faction, subject_id))
        return applied

    def list_modifier_history(
        self, subject_id: str, limit: Optional[int] = None
    ) -> List[ModifierHistoryRecord]:
        query = """SELECT id, subject_id, modifier_id, action, occurred_at, magnitude,
                          source, source_id, previous_state, reason
                   FROM modifier_history WHERE subject_id = ? ORDER BY id"""
        params: List[object] = [subject_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with reading(self._db_path, self._timeout) as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            ModifierHistoryRecord(
                id=int(row[0]),
                subject_id=row[1],
                modifier_id=int(row[2]),
                action=HistoryAction(row[3]),
                occurred_at=from_iso(row[4]),
                magnitude=float(row[5]),
                source=ModifierSource(row[6]),
                source_id=row[7],
                previous_state=json.loads(row[8]) if row[8] else None,
                reason=row[9],
            )
            for row in rows
        ]

    # Resources --------------------------------------------------------
    @staticmethod
    def _read_ledgers(conn: sqlite3.Connection, subject_id: str) -> Dict[ResourceType, ResourceLedger]:
        rows = conn.execute(
            f"SELECT {_LEDGER_COLUMNS} FROM resource_ledgers WHERE subject_id = ?",
            (subject_id,),
        ).fetchall()
        if not rows:
            raise ValueError(f"Unknown subject {subject_id}")
        ledgers = [_row_to_ledger(row) for row in rows]
        return {ledger.resource: ledger for ledger in ledgers}

    def get_ledger(self, subject_id: str) -> Dict[ResourceType, ResourceLedger]:
        with reading(self._db_path, self._timeout) as conn:
            return self._read_ledgers(conn, subject_id)

    def set_storage_cap(
        self,
        subject_id: str,
        resource: ResourceType,
        storage_cap: int,
        accumulator_cap: Optional[int] = None,
    ) -> None:
        if storage_cap < 0 or (accumulator_cap is not None and accumulator_cap < 0):
            raise ValueError("Caps must be non-negative")
        with transaction(self._db_path, self._timeout) as conn:
            cursor = conn.execute(
                """UPDATE resource_ledgers
                       SET storage_cap = ?, accumulator_cap = COALESCE(?, accumulator_cap)
                       WHERE subject_id = ? AND resource = ?""",
                (storage_cap, accumulator_cap, subject_id, ResourceType(resource).value),
            )
            if cursor.rowcount == 0:
                raise ValueError(f"Unknown subject {subject_id}")

    def set_balance(self, subject_id: str, resource: ResourceType, amount: int) -> None:
        with transaction(self._db_path, self._timeout) as conn:
            cursor = conn.execute(
                "UPDATE resource_ledgers SET amount = ? WHERE subject_id = ? AND resource = ?",
                (int(amount), subject_id, ResourceType(resource).value),
            )
            if cursor.rowcount == 0:
                raise ValueError(f"Unknown subject {subject_id}")

    def set_production_source(
        self,
        subject_id: str,
        source_id: str,
        resource: ResourceType,
        rate_per_hour: float,
    ) -> None:
        """Create or replace the hourly base rate a source contributes."""

        with transaction(self._db_path, self._timeout) as conn:
            self._require_subject(conn, subject_id)
            conn.execute(
                """INSERT INTO production_sources (subject_id, source_id, resource, rate_per_hour)
                       VALUES (?, ?, ?, ?)
                       ON CONFLICT(subject_id, source_id, resource)
                       DO UPDATE SET rate_per_hour = excluded.rate_per_hour""",
                (subject_id, source_id, ResourceType(resource).value, float(rate_per_hour)),
            )

    def remove_production_source(self, subject_id: str, source_id: str) -> int:
        with transaction(self._db_path, self._timeout) as conn:
            cursor = conn.execute(
                "DELETE FROM production_sources WHERE subject_id = ? AND source_id = ?",
                (subject_id, source_id),
            )
            return cursor.rowcount

    def base_rates(self, subject_id: str) -> Dict[ResourceType, float]:
        """Hourly base production per resource, summed over sources."""

        with reading(self._db_path, self._timeout) as conn:
            rows = conn.execute(
                """SELECT resource, SUM(rate_per_hour) FROM production_sources
                       WHERE subject_id = ? GROUP BY resource""",
                (subject_id,),
            ).fetchall()
        return {ResourceType(row[0]): float(row[1] or 0.0) for row in rows}

    def credit_production(
        self,
        subject_id: str,
        deltas: Mapping[ResourceType, float],
        now: datetime,
    ) -> Tuple[Dict[ResourceType, float], Dict[ResourceType, float]]:
        """Add production to the accumulators of several resources at once.

        Amounts beyond the storage or accumulator cap are discarded. Either
        every resource is credited or, on error, none is.
        """

        credited: Dict[ResourceType, float] = {}
        discarded: Dict[ResourceType, float] = {}
        with transaction(self._db_path, self._timeout) as conn:
            ledgers = self._read_ledgers(conn, subject_id)
            for raw_resource, delta in deltas.items():
                resource = ResourceType(raw_resource)
                ledger = ledgers[resource]
                produced = max(0.0, float(delta))
                accepted = min(produced, ledger.headroom())
                ledger.accumulated += accepted
                conn.execute(
                    """UPDATE resource_ledgers
                           SET accumulated = ?, last_produced_at = ?
                           WHERE subject_id = ? AND resource = ?""",
                    (ledger.accumulated, to_iso(now), subject_id, resource.value),
                )
                credited[resource] = accepted
                discarded[resource] = produced - accepted
        return credited, discarded

    def collect_resources(self, subject_id: str) -> Dict[ResourceType, int]:
        """Move whole accumulated units into storage, up to the storage cap."""

        moved: Dict[ResourceType, int] = {}
        with transaction(self._db_path, self._timeout) as conn:
            for resource, ledger in self._read_ledgers(conn, subject_id).items():
                room = max(0, ledger.storage_cap - ledger.amount)
                amount = min(_whole_units(ledger.accumulated), room)
                if amount <= 0:
                    continue
                remaining = ledger.accumulated - amount
                if remaining < 1e-9:
                    remaining = 0.0
                conn.execute(
                    """UPDATE resource_ledgers
                           SET amount = amount + ?, accumulated = ?
                           WHERE subject_id = ? AND resource = ?""",
                    (amount, remaining, subject_id, resource.value),
                )
                moved[resource] = amount
        return moved

    def deduct_resources(self, subject_id: str, costs: Mapping[ResourceType, int]) -> None:
        """Spend stored resources; fails without side effects if any is short."""

        with transaction(self._db_path, self._timeout) as conn:
            ledgers = self._read_ledgers(conn, subject_id)
            shortfalls = []
            for raw_resource, cost in costs.items():
                resource = ResourceType(raw_resource)
                if int(cost) < 0:
                    raise ValueError(f"Negative cost for {resource.value}")
                if ledgers[resource].amount < int(cost):
                    shortfalls.append(f"{resource.value} ({ledgers[resource].amount}/{int(cost)})")
            if shortfalls:
                raise ValueError(f"Insufficient resources: {', '.join(shortfalls)}")
            for raw_resource, cost in costs.items():
                conn.execute(
                    """UPDATE resource_ledgers SET amount = amount - ?
                           WHERE subject_id = ? AND resource = ?""",
                    (int(cost), subject_id, ResourceType(raw_resource).value),
                )

    # Units ------------------------------------------------------------
    def credit_units(self, subject_id: str, unit: str, quantity: int) -> int:
        """Add trained units and return the new total."""

        if quantity <= 0:
            raise ValueError("Quantity must be positive")
        with transaction(self._db_path, self._timeout) as conn:
            self._require_subject(conn, subject_id)
            conn.execute(
                """INSERT INTO units (subject_id, unit, quantity) VALUES (?, ?, ?)
                       ON CONFLICT(subject_id, unit) DO UPDATE SET quantity = quantity + excluded.quantity""",
                (subject_id, unit, int(quantity)),
            )
            row = conn.execute(
                "SELECT quantity FROM units WHERE subject_id = ? AND unit = ?",
                (subject_id, unit),
            ).fetchone()
        return int(row[0])

    def get_units(self, subject_id: str) -> Dict[str, int]:
        with reading(self._db_path, self._timeout) as conn:
            rows = conn.execute(
                "SELECT unit, quantity FROM units WHERE subject_id = ? ORDER BY unit",
                (subject_id,),
            ).fetchall()
        return {row[0]: int(row[1]) for row in rows}


__all__ = ["EmpireState"]
