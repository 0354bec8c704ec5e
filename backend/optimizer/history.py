"""Durable log of completed conversions and the statistics derived from it.

Rows live in ``history_items`` through SQLAlchemy Core, so any database
URL works (SQLite by default). The store owns its schema: a
``schema_version`` table records how many of ``MIGRATIONS`` have been
applied and the rest run when the store is opened.
"""
import json
import logging
import math
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from optimizer import config
from optimizer.errors import OptimizerError
from optimizer.options import Preset

logger = logging.getLogger("optimizer.history")

# Reference date of the timestamps in exported JSON history files
_LEGACY_EPOCH = datetime(2001, 1, 1, tzinfo=timezone.utc)

MIGRATIONS: list[tuple[str, ...]] = [
    (
        """
        CREATE TABLE IF NOT EXISTS history_items (
            seq {seq_column},
            id VARCHAR(64) NOT NULL UNIQUE,
            file_name VARCHAR(512) NOT NULL,
            original_size BIGINT NOT NULL,
            compressed_size BIGINT NOT NULL,
            processed_at VARCHAR(50) NOT NULL,
            preset_used VARCHAR(20) NOT NULL
        )
        """,
    ),
    ("CREATE INDEX ix_history_items_processed_at ON history_items (processed_at)",),
]

_SEQ_COLUMNS = {
    "sqlite": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "mysql": "BIGINT AUTO_INCREMENT PRIMARY KEY",
}


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def savings_percent(original_size: int, compressed_size: int) -> int:
    """Whole-percent reduction, clamped to [0, 100]. A file that grew saved 0%."""
    if original_size <= 0:
        return 0
    raw = round_half_up(100 * (1 - compressed_size / original_size))
    return max(0, min(100, raw))


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class HistoryItem:
    file_name: str
    original_size: int
    compressed_size: int
    preset_used: Preset
    processed_at: datetime = field(default_factory=_now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def savings_percent(self) -> int:
        return savings_percent(self.original_size, self.compressed_size)

    @property
    def saved_bytes(self) -> int:
        return max(0, self.original_size - self.compressed_size)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "file_name": self.file_name,
            "original_size": self.original_size,
            "compressed_size": self.compressed_size,
            "savings_percent": self.savings_percent,
            "processed_at": self.processed_at.isoformat(),
            "preset_used": self.preset_used.value,
        }


def create_history_engine(url: Optional[str] = None) -> Engine:
    url = url or config.DATABASE_URL
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            # One shared connection, or every checkout would see a fresh empty database
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    logger.info("History engine created (%s)", engine.dialect.name)
    return engine


class HistoryStore:
    """Append-only history with explicit deletion. Writes are serialized by a lock."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._write_lock = threading.Lock()
        self.migrate()

    @contextmanager
    def _session(self):
        with self.engine.connect() as conn:
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    @property
    def schema_version(self) -> int:
        with self.engine.connect() as conn:
            row = conn.execute(text("SELECT version FROM schema_version")).fetchone()
        return int(row[0]) if row else 0

    def migrate(self) -> int:
        """Apply pending migrations in order. Returns the resulting schema version."""
        with self._write_lock, self._session() as conn:
            conn.execute(text("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)"))
            row = conn.execute(text("SELECT version FROM schema_version")).fetchone()
            if row is None:
                conn.execute(text("INSERT INTO schema_version (version) VALUES (0)"))
                current = 0
            else:
                current = int(row[0])
            seq_column = _SEQ_COLUMNS.get(self.engine.dialect.name, _SEQ_COLUMNS["sqlite"])
            for version, statements in enumerate(MIGRATIONS[current:], start=current + 1):
                for stmt in statements:
                    conn.execute(text(stmt.format(seq_column=seq_column)))
                conn.execute(text("UPDATE schema_version SET version = :v"), {"v": version})
                logger.info("History schema migrated to version %s", version)
        return max(current, len(MIGRATIONS))

    def append(self, item: HistoryItem) -> None:
        with self._write_lock, self._session() as conn:
            conn.execute(
                text("""
                    INSERT INTO history_items (id, file_name, original_size, compressed_size, processed_at, preset_used)
                    VALUES (:id, :file_name, :original_size, :compressed_size, :processed_at, :preset_used)
                """),
                _params(item),
            )
        logger.info("History: %s saved %s%%", item.file_name, item.savings_percent)

    def all(self) -> list[HistoryItem]:
        """Every item, most recent first."""
        return self._select("SELECT id, file_name, original_size, compressed_size, processed_at, preset_used "
                            "FROM history_items ORDER BY seq DESC")

    def recent(self, limit: int) -> list[HistoryItem]:
        if limit <= 0:
            return []
        return self._select(
            "SELECT id, file_name, original_size, compressed_size, processed_at, preset_used "
            "FROM history_items ORDER BY seq DESC LIMIT :lim",
            {"lim": limit},
        )

    def get(self, item_id: str) -> Optional[HistoryItem]:
        items = self._select(
            "SELECT id, file_name, original_size, compressed_size, processed_at, preset_used "
            "FROM history_items WHERE id = :id",
            {"id": item_id},
        )
        return items[0] if items else None

    def remove(self, item_id: str) -> bool:
        with self._write_lock, self._session() as conn:
            result = conn.execute(text("DELETE FROM history_items WHERE id = :id"), {"id": item_id})
        return result.rowcount > 0

    def clear(self) -> int:
        with self._write_lock, self._session() as conn:
            result = conn.execute(text("DELETE FROM history_items"))
        logger.info("History cleared (%s items)", result.rowcount)
        return result.rowcount

    def keep_latest(self, limit: Optional[int] = None) -> int:
        """Delete all but the ``limit`` most recent items. Returns how many were removed."""
        limit = config.HISTORY_MAX_ITEMS if limit is None else limit
        if limit < 0:
            raise ValueError(f"limit must not be negative, got {limit}")
        with self._write_lock, self._session() as conn:
            result = conn.execute(
                text(
                    "DELETE FROM history_items WHERE seq NOT IN ("
                    "SELECT seq FROM (SELECT seq FROM history_items ORDER BY seq DESC LIMIT :limit) AS newest)"
                ),
                {"limit": limit},
            )
        if result.rowcount:
            logger.info("History: trimmed %s items beyond the latest %s", result.rowcount, limit)
        return result.rowcount

    def remove_older_than(self, cutoff: datetime) -> int:
        """Delete items processed before ``cutoff``. Returns how many were removed.

        Age-based pruning; nothing calls it implicitly.
        """
        stale = [item.id for item in self.all() if item.processed_at < _aware(cutoff)]
        if not stale:
            return 0
        with self._write_lock, self._session() as conn:
            for item_id in stale:
                conn.execute(text("DELETE FROM history_items WHERE id = :id"), {"id": item_id})
        logger.info("History: removed %s items older than %s", len(stale), cutoff.isoformat())
        return len(stale)

    @property
    def total_saved_bytes(self) -> int:
        return sum(item.saved_bytes for item in self.all())

    @property
    def average_savings_percent(self) -> int:
        items = self.all()
        if not items:
            return config.DEFAULT_AVERAGE_SAVINGS_PERCENT
        return round_half_up(sum(i.savings_percent for i in items) / len(items))

    @property
    def best_savings_percent(self) -> Optional[int]:
        items = self.all()
        if not items:
            return None
        return max(i.savings_percent for i in items)

    def stats(self) -> dict:
        """All aggregates computed over a single read."""
        items = self.all()
        return {
            "count": len(items),
            "total_saved_bytes": sum(i.saved_bytes for i in items),
            "average_savings_percent": (
                round_half_up(sum(i.savings_percent for i in items) / len(items))
                if items else config.DEFAULT_AVERAGE_SAVINGS_PERCENT
            ),
            "best_savings_percent": max((i.savings_percent for i in items), default=None),
        }

    def import_legacy_json(self, path) -> int:
        """Import an exported JSON history list. Items whose id already exists are skipped."""
        path = Path(path)
        try:
            records = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise OptimizerError(f"Could not read history export {path.name}: {e}") from e
        if not isinstance(records, list):
            raise OptimizerError(f"{path.name} does not contain a history list")

        existing = {item.id for item in self.all()}
        imported = []
        for record in records:
            try:
                item = _item_from_legacy(record)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed history record %r: %s", record, e)
                continue
            if item.id in existing:
                continue
            existing.add(item.id)
            imported.append(item)

        # Oldest first so insertion order matches processing order
        imported.sort(key=lambda i: i.processed_at)
        with self._write_lock, self._session() as conn:
            for item in imported:
                conn.execute(
                    text("""
                        INSERT INTO history_items (id, file_name, original_size, compressed_size, processed_at, preset_used)
                        VALUES (:id, :file_name, :original_size, :compressed_size, :processed_at, :preset_used)
                    """),
                    _params(item),
                )
        logger.info("Imported %s history items from %s", len(imported), path.name)
        return len(imported)

    def _select(self, sql: str, params: Optional[dict] = None) -> list[HistoryItem]:
        with self.engine.connect() as conn:
            rows = conn.execute(text(sql), params or {}).fetchall()
        return [_row_to_item(r) for r in rows]


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _params(item: HistoryItem) -> dict:
    return {
        "id": item.id,
        "file_name": item.file_name,
        "original_size": item.original_size,
        "compressed_size": item.compressed_size,
        "processed_at": _aware(item.processed_at).isoformat(),
        "preset_used": item.preset_used.value,
    }


def _row_to_item(row) -> HistoryItem:
    return HistoryItem(
        id=row[0],
        file_name=row[1],
        original_size=int(row[2]),
        compressed_size=int(row[3]),
        processed_at=_aware(datetime.fromisoformat(row[4])),
        preset_used=Preset(row[5]),
    )


def _legacy_timestamp(value) -> datetime:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _LEGACY_EPOCH + timedelta(seconds=value)
    return _aware(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def _item_from_legacy(record: dict) -> HistoryItem:
    preset = record.get("presetUsed") or Preset.CUSTOM.value
    return HistoryItem(
        id=str(record["id"]),
        file_name=str(record["fileName"]),
        original_size=int(record["originalSize"]),
        compressed_size=int(record["compressedSize"]),
        processed_at=_legacy_timestamp(record["processedAt"]),
        preset_used=Preset(str(preset).lower()),
    )
