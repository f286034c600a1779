"""SQLite storage. One file holds every pet, its history and its oracle state."""

from __future__ import annotations

import functools
import json
import sqlite3
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Any, Iterator

from kore_pet.errors import StorageError
from kore_pet.models import (
    BehaviorEvent,
    DescriptorEvolution,
    Judgment,
    Pet,
    Rarity,
    Stats,
    Trace,
    Trait,
    TraitKind,
)

TABLES = (
    "pets", "behavior_events", "judgments", "descriptor_evolutions",
    "traits", "oracle_states", "traces",
)


def _storage_op(fn):
    """Re-raise sqlite3 errors as StorageError.

    Outside transaction() a failed write can leave sqlite3's implicit
    transaction open; it is rolled back here so later BEGINs still work.
    """

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except (sqlite3.Error, OverflowError) as exc:
            with suppress(sqlite3.Error):
                if not self._depth and self.conn.in_transaction:
                    self.conn.rollback()
            raise StorageError(f"{fn.__name__}: {exc}") from exc

    return wrapper


class Storage:
    """SQLite backend. Zero config. Portable."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        try:
            self.conn = sqlite3.connect(str(self.path))
            self.conn.execute("PRAGMA journal_mode=WAL")
            self._init_schema()
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open {self.path}: {exc}") from exc
        self._depth = 0

    def _init_schema(self) -> None:
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS pets (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                species TEXT NOT NULL DEFAULT '',
                health INTEGER NOT NULL,
                attack INTEGER NOT NULL,
                defense INTEGER NOT NULL,
                speed INTEGER NOT NULL,
                magic INTEGER NOT NULL,
                rarity TEXT NOT NULL DEFAULT 'N',
                level INTEGER NOT NULL DEFAULT 1,
                bond INTEGER NOT NULL DEFAULT 0,
                descriptor TEXT NOT NULL DEFAULT '',
                traits TEXT NOT NULL DEFAULT '[]',
                last_evolution_at REAL,
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS behavior_events (
                id TEXT PRIMARY KEY,
                pet_id TEXT NOT NULL,
                action_type TEXT NOT NULL,
                target TEXT NOT NULL DEFAULT '',
                context TEXT NOT NULL DEFAULT '{}',
                timestamp REAL NOT NULL,
                processed INTEGER NOT NULL DEFAULT 0
            );
            CREATE INDEX IF NOT EXISTS idx_events_pet_processed
                ON behavior_events(pet_id, processed, timestamp);

            CREATE TABLE IF NOT EXISTS judgments (
                id TEXT PRIMARY KEY,
                pet_id TEXT NOT NULL,
                behavior_count INTEGER NOT NULL,
                accumulated_weight REAL NOT NULL,
                should_evolve INTEGER NOT NULL,
                detail TEXT NOT NULL DEFAULT '{}',
                timestamp REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_judgments_pet_time
                ON judgments(pet_id, timestamp DESC);

            CREATE TABLE IF NOT EXISTS descriptor_evolutions (
                id TEXT PRIMARY KEY,
                pet_id TEXT NOT NULL,
                old_descriptor TEXT NOT NULL,
                new_descriptor TEXT NOT NULL,
                content TEXT NOT NULL DEFAULT '{}',
                stats TEXT NOT NULL DEFAULT '{}',
                timestamp REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_evolutions_pet_time
                ON descriptor_evolutions(pet_id, timestamp DESC);

            CREATE TABLE IF NOT EXISTS traits (
                id TEXT PRIMARY KEY,
                pet_id TEXT NOT NULL,
                name TEXT NOT NULL,
                kind TEXT NOT NULL
                    CHECK (kind IN ('passive', 'active', 'trigger')),
                description TEXT NOT NULL DEFAULT '',
                effects TEXT NOT NULL DEFAULT '{}',
                active INTEGER NOT NULL DEFAULT 1,
                created_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_traits_pet_active
                ON traits(pet_id, active, created_at);

            CREATE TABLE IF NOT EXISTS oracle_states (
                scope TEXT PRIMARY KEY,
                snapshot TEXT NOT NULL,
                register TEXT NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS traces (
                id TEXT PRIMARY KEY,
                operation TEXT NOT NULL,
                input_text TEXT NOT NULL DEFAULT '',
                output_text TEXT NOT NULL DEFAULT '',
                source TEXT NOT NULL DEFAULT '',
                duration_ms REAL,
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_traces_operation
                ON traces(operation);
            CREATE INDEX IF NOT EXISTS idx_traces_created
                ON traces(created_at DESC);
        """)
        self.conn.commit()

    # ── Transactions ───────────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group several writes into one atomic unit. Nested calls join the outer one."""
        if self._depth:
            yield
            return
        try:
            self.conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise StorageError(f"begin: {exc}") from exc
        self._depth += 1
        try:
            yield
        except BaseException:
            self._depth -= 1
            self.conn.rollback()
            raise
        self._depth -= 1
        try:
            self.conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"commit: {exc}") from exc

    def _commit(self) -> None:
        if not self._depth:
            self.conn.commit()

    # ── Pets ───────────────────────────────────────────────────────────

    @_storage_op
    def save_pet(self, pet: Pet) -> None:
        s = pet.stats
        self.conn.execute(
            """INSERT OR REPLACE INTO pets
               (id, name, species, health, attack, defense, speed, magic,
                rarity, level, bond, descriptor, traits,
                last_evolution_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                pet.id, pet.name, pet.species,
                s.health, s.attack, s.defense, s.speed, s.magic,
                pet.rarity.value, pet.level, pet.bond, pet.descriptor,
                json.dumps(pet.traits, ensure_ascii=False),
                pet.last_evolution_at, pet.created_at,
            ),
        )
        self._commit()

    @_storage_op
    def load_pet(self, pet_id: str) -> Pet | None:
        row = self.conn.execute(
            "SELECT * FROM pets WHERE id = ?", (pet_id,)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_pet(row)

    @_storage_op
    def all_pets(self) -> list[Pet]:
        rows = self.conn.execute(
            "SELECT * FROM pets ORDER BY created_at"
        ).fetchall()
        return [self._row_to_pet(r) for r in rows]

    @_storage_op
    def add_to_stats(self, pet_id: str, deltas: dict[str, int]) -> None:
        """Additive update of all stats in one statement."""
        self.conn.execute(
            """UPDATE pets SET health = health + ?, attack = attack + ?,
                   defense = defense + ?, speed = speed + ?, magic = magic + ?
               WHERE id = ?""",
            (
                int(deltas.get("health", 0)), int(deltas.get("attack", 0)),
                int(deltas.get("defense", 0)), int(deltas.get("speed", 0)),
                int(deltas.get("magic", 0)), pet_id,
            ),
        )
        self._commit()

    @_storage_op
    def update_descriptor(self, pet_id: str, descriptor: str,
                          evolved_at: float) -> None:
        self.conn.execute(
            "UPDATE pets SET descriptor = ?, last_evolution_at = ? WHERE id = ?",
            (descriptor, evolved_at, pet_id),
        )
        self._commit()

    # ── Behavior events ────────────────────────────────────────────────

    @_storage_op
    def save_event(self, event: BehaviorEvent) -> None:
        self.conn.execute(
            """INSERT INTO behavior_events
               (id, pet_id, action_type, target, context, timestamp, processed)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                event.id, event.pet_id, event.action_type, event.target,
                json.dumps(event.context, ensure_ascii=False, default=str),
                event.timestamp, int(event.processed),
            ),
        )
        self._commit()

    @_storage_op
    def unprocessed_events(self, pet_id: str) -> list[BehaviorEvent]:
        rows = self.conn.execute(
            """SELECT * FROM behavior_events
               WHERE pet_id = ? AND processed = 0
               ORDER BY timestamp ASC, rowid ASC""",
            (pet_id,),
        ).fetchall()
        return [self._row_to_event(r) for r in rows]

    @_storage_op
    def events(self, pet_id: str, processed: bool | None = None) -> list[BehaviorEvent]:
        query = "SELECT * FROM behavior_events WHERE pet_id = ?"
        params: list[Any] = [pet_id]
        if processed is not None:
            query += " AND processed = ?"
            params.append(int(processed))
        query += " ORDER BY timestamp ASC, rowid ASC"
        rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_event(r) for r in rows]

    @_storage_op
    def mark_processed(self, event_ids: list[str]) -> int:
        """Flag events processed. Only flips rows still unprocessed; returns how many."""
        if not event_ids:
            return 0
        placeholders = ",".join("?" for _ in event_ids)
        cursor = self.conn.execute(
            f"""UPDATE behavior_events SET processed = 1
                WHERE processed = 0 AND id IN ({placeholders})""",
            event_ids,
        )
        self._commit()
        return cursor.rowcount

    @_storage_op
    def purge_events(self, pet_id: str | None, before: float,
                     keep: int | None = None) -> int:
        """Delete processed events older than `before`.

        With `keep`, also trim each pet's processed events to the newest `keep`.
        Unprocessed events are never deleted.
        """
        scope = "" if pet_id is None else " AND pet_id = ?"
        params: list[Any] = [before] + ([] if pet_id is None else [pet_id])
        cursor = self.conn.execute(
            f"DELETE FROM behavior_events WHERE processed = 1 AND timestamp < ?{scope}",
            params,
        )
        deleted = cursor.rowcount
        if keep is not None:
            cursor = self.conn.execute(
                f"""DELETE FROM behavior_events WHERE id IN (
                        SELECT id FROM (
                            SELECT id, ROW_NUMBER() OVER (
                                PARTITION BY pet_id
                                ORDER BY timestamp DESC, rowid DESC
                            ) AS rn
                            FROM behavior_events
                            WHERE processed = 1{scope}
                        ) WHERE rn > ?
                    )""",
                ([] if pet_id is None else [pet_id]) + [keep],
            )
            deleted += cursor.rowcount
        self._commit()
        return deleted

    # ── Judgments ──────────────────────────────────────────────────────

    @_storage_op
    def save_judgment(self, judgment: Judgment) -> None:
        self.conn.execute(
            """INSERT INTO judgments
               (id, pet_id, behavior_count, accumulated_weight,
                should_evolve, detail, timestamp)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                judgment.id, judgment.pet_id, judgment.behavior_count,
                judgment.accumulated_weight, int(judgment.should_evolve),
                json.dumps(judgment.detail, ensure_ascii=False, default=str),
                judgment.timestamp,
            ),
        )
        self._commit()

    @_storage_op
    def last_judgment_time(self, pet_id: str) -> float | None:
        row = self.conn.execute(
            "SELECT MAX(timestamp) FROM judgments WHERE pet_id = ?", (pet_id,)
        ).fetchone()
        return row[0]

    @_storage_op
    def load_judgments(self, pet_id: str, limit: int = 100) -> list[Judgment]:
        rows = self.conn.execute(
            """SELECT * FROM judgments WHERE pet_id = ?
               ORDER BY timestamp DESC, rowid DESC LIMIT ?""",
            (pet_id, limit),
        ).fetchall()
        return [self._row_to_judgment(r) for r in rows]

    # ── Descriptor evolutions ──────────────────────────────────────────

    @_storage_op
    def save_evolution(self, record: DescriptorEvolution) -> None:
        self.conn.execute(
            """INSERT INTO descriptor_evolutions
               (id, pet_id, old_descriptor, new_descriptor, content,
                stats, timestamp)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                record.id, record.pet_id, record.old_descriptor,
                record.new_descriptor,
                json.dumps(record.content, ensure_ascii=False, default=str),
                json.dumps(record.stats), record.timestamp,
            ),
        )
        self._commit()

    @_storage_op
    def load_evolutions(self, pet_id: str, limit: int = 10) -> list[DescriptorEvolution]:
        rows = self.conn.execute(
            """SELECT * FROM descriptor_evolutions WHERE pet_id = ?
               ORDER BY timestamp DESC, rowid DESC LIMIT ?""",
            (pet_id, limit),
        ).fetchall()
        return [self._row_to_evolution(r) for r in rows]

    # ── Traits ─────────────────────────────────────────────────────────

    @_storage_op
    def save_trait(self, trait: Trait) -> None:
        self.conn.execute(
            """INSERT OR REPLACE INTO traits
               (id, pet_id, name, kind, description, effects, active, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                trait.id, trait.pet_id, trait.name, trait.kind.value,
                trait.description, json.dumps(trait.effects, ensure_ascii=False),
                int(trait.active), trait.created_at,
            ),
        )
        self._commit()

    @_storage_op
    def load_traits(self, pet_id: str, active_only: bool = False) -> list[Trait]:
        query = "SELECT * FROM traits WHERE pet_id = ?"
        if active_only:
            query += " AND active = 1"
        query += " ORDER BY created_at ASC, rowid ASC"
        rows = self.conn.execute(query, (pet_id,)).fetchall()
        return [self._row_to_trait(r) for r in rows]

    @_storage_op
    def count_active_traits(self, pet_id: str) -> int:
        return self.conn.execute(
            "SELECT COUNT(*) FROM traits WHERE pet_id = ? AND active = 1",
            (pet_id,),
        ).fetchone()[0]

    @_storage_op
    def deactivate_oldest_traits(self, pet_id: str, count: int) -> int:
        """Soft-delete the `count` oldest active traits. Returns how many."""
        if count <= 0:
            return 0
        cursor = self.conn.execute(
            """UPDATE traits SET active = 0 WHERE id IN (
                   SELECT id FROM traits
                   WHERE pet_id = ? AND active = 1
                   ORDER BY created_at ASC, rowid ASC
                   LIMIT ?
               )""",
            (pet_id, count),
        )
        self._commit()
        return cursor.rowcount

    # ── Oracle state ───────────────────────────────────────────────────

    @_storage_op
    def save_oracle_state(self, scope: str, snapshot: dict[str, float],
                          register: dict[str, Any], updated_at: float) -> None:
        self.conn.execute(
            """INSERT OR REPLACE INTO oracle_states
               (scope, snapshot, register, updated_at) VALUES (?, ?, ?, ?)""",
            (scope, json.dumps(snapshot), json.dumps(register), updated_at),
        )
        self._commit()

    @_storage_op
    def load_oracle_state(self, scope: str) -> tuple[dict[str, float], dict[str, Any]] | None:
        row = self.conn.execute(
            "SELECT snapshot, register FROM oracle_states WHERE scope = ?",
            (scope,),
        ).fetchone()
        if row is None:
            return None
        return json.loads(row[0]), json.loads(row[1])

    @_storage_op
    def oracle_scopes(self) -> list[str]:
        rows = self.conn.execute(
            "SELECT scope FROM oracle_states ORDER BY scope"
        ).fetchall()
        return [r[0] for r in rows]

    @_storage_op
    def delete_oracle_state(self, scope: str) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM oracle_states WHERE scope = ?", (scope,)
        )
        self._commit()
        return cursor.rowcount > 0

    # ── Traces ─────────────────────────────────────────────────────────

    @_storage_op
    def save_trace(self, trace: Trace) -> None:
        self.conn.execute(
            """INSERT INTO traces
               (id, operation, input_text, output_text, source,
                duration_ms, metadata, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                trace.id, trace.operation, trace.input_text,
                trace.output_text, trace.source, trace.duration_ms,
                json.dumps(trace.metadata, default=str), trace.created_at,
            ),
        )
        self._commit()

    @_storage_op
    def load_traces(self, operation: str | None = None,
                    source: str | None = None,
                    limit: int = 100) -> list[Trace]:
        query = "SELECT * FROM traces WHERE 1=1"
        params: list = []
        if operation is not None:
            query += " AND operation = ?"
            params.append(operation)
        if source is not None:
            query += " AND source = ?"
            params.append(source)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_trace(r) for r in rows]

    # ── Stats ──────────────────────────────────────────────────────────

    @_storage_op
    def counts(self) -> dict[str, int]:
        return {
            table: self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            for table in TABLES
        }

    # ── Close ──────────────────────────────────────────────────────────

    def close(self) -> None:
        self.conn.close()

    # ── Row mappers ────────────────────────────────────────────────────

    @staticmethod
    def _row_to_pet(row: tuple) -> Pet:
        return Pet(
            id=row[0],
            name=row[1],
            species=row[2],
            stats=Stats(health=row[3], attack=row[4], defense=row[5],
                        speed=row[6], magic=row[7]),
            rarity=Rarity(row[8]),
            level=row[9],
            bond=row[10],
            descriptor=row[11],
            traits=json.loads(row[12]),
            last_evolution_at=row[13],
            created_at=row[14],
        )

    @staticmethod
    def _row_to_event(row: tuple) -> BehaviorEvent:
        return BehaviorEvent(
            id=row[0],
            pet_id=row[1],
            action_type=row[2],
            target=row[3],
            context=json.loads(row[4]),
            timestamp=row[5],
            processed=bool(row[6]),
        )

    @staticmethod
    def _row_to_judgment(row: tuple) -> Judgment:
        return Judgment(
            id=row[0],
            pet_id=row[1],
            behavior_count=row[2],
            accumulated_weight=row[3],
            should_evolve=bool(row[4]),
            detail=json.loads(row[5]),
            timestamp=row[6],
        )

    @staticmethod
    def _row_to_evolution(row: tuple) -> DescriptorEvolution:
        return DescriptorEvolution(
            id=row[0],
            pet_id=row[1],
            old_descriptor=row[2],
            new_descriptor=row[3],
            content=json.loads(row[4]),
            stats=json.loads(row[5]),
            timestamp=row[6],
        )

    @staticmethod
    def _row_to_trait(row: tuple) -> Trait:
        return Trait(
            id=row[0],
            pet_id=row[1],
            name=row[2],
            kind=TraitKind(row[3]),
            description=row[4],
            effects=json.loads(row[5]),
            active=bool(row[6]),
            created_at=row[7],
        )

    @staticmethod
    def _row_to_trace(row: tuple) -> Trace:
        return Trace(
            id=row[0],
            operation=row[1],
            input_text=row[2],
            output_text=row[3],
            source=row[4],
            duration_ms=row[5],
            metadata=json.loads(row[6]),
            created_at=row[7],
        )
