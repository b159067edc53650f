"""SQLite-backed learning store.

Tables:
- source_patterns: signatures, regexes and OCR corrections per source
- merchants / merchant_aliases: merchant records and the alias index
- feedback: append-only user corrections, trimmed to the newest entries
- classifier_weights: versioned line-classifier weights
- performance: per-stage duration and confidence samples
- ocr_cache: normalized text keyed by document content hash
- transactions: emitted transactions, so feedback can find its snapshot

One store instance is shared by every component of a process. The
connection is guarded by a re-entrant lock; read-modify-write sequences are
additionally serialized per key and merchant writes are checked against a
version column.
"""

import json
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any

from src.errors import LearningStoreWriteConflict
from src.store.models import (
    ClassifierWeights,
    FeedbackEntry,
    MerchantRecord,
    MerchantSnapshot,
    OCRCacheEntry,
    PatternKind,
    PerformanceSample,
    SourcePattern,
    utc_now,
)
from src.utils.logger import get_logger

logger = get_logger(__name__)

EXPORT_FORMAT_VERSION = 1


def _cutoff(days: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()


class KeyedLocks:
    """One ``threading.Lock`` per key, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield


class LearningStore:
    """Persistent patterns, merchants, feedback and model weights.

    Thread-safe: the store may be used from the event loop and from worker
    threads at the same time.
    """

    def __init__(self, db_path: Path | str = ":memory:", max_retries: int = 5):
        """
        Initialize the learning store.

        Args:
            db_path: SQLite database file, or ``":memory:"``.
            max_retries: Attempts for an optimistic merchant update before
                the write conflict is surfaced.
        """
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.max_retries = max_retries

        self._lock = threading.RLock()
        self._keys = KeyedLocks()
        self._revision = 0
        self._snapshot: MerchantSnapshot | None = None

        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_db()
        logger.info("Learning store opened at %s", self.db_path)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS source_patterns (
                    source_id TEXT NOT NULL,
                    pattern TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    accuracy REAL NOT NULL,
                    usage_count INTEGER NOT NULL DEFAULT 0,
                    last_used TEXT,
                    replacement TEXT,
                    PRIMARY KEY (source_id, pattern)
                );
                CREATE INDEX IF NOT EXISTS idx_patterns_kind ON source_patterns(kind);

                CREATE TABLE IF NOT EXISTS merchants (
                    normalized_name TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    category TEXT NOT NULL,
                    subcategory TEXT,
                    confidence REAL NOT NULL,
                    aliases TEXT,  -- JSON array
                    occurrences INTEGER NOT NULL DEFAULT 1,
                    last_seen TEXT NOT NULL,
                    metadata TEXT,  -- JSON object
                    version INTEGER NOT NULL DEFAULT 0
                );
                CREATE INDEX IF NOT EXISTS idx_merchants_category ON merchants(category);

                CREATE TABLE IF NOT EXISTS merchant_aliases (
                    alias TEXT PRIMARY KEY,
                    normalized_name TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS feedback (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    transaction_id TEXT NOT NULL,
                    original TEXT NOT NULL,
                    correction TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    applied INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS classifier_weights (
                    name TEXT PRIMARY KEY,
                    version INTEGER NOT NULL,
                    weights TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS performance (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    operation TEXT NOT NULL,
                    duration_ms REAL NOT NULL,
                    confidence REAL NOT NULL,
                    timestamp TEXT NOT NULL,
                    metadata TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_performance_op ON performance(operation);

                CREATE TABLE IF NOT EXISTS ocr_cache (
                    content_hash TEXT PRIMARY KEY,
                    text TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    method TEXT NOT NULL,
                    page_count INTEGER NOT NULL,
                    timestamp TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS transactions (
                    id TEXT PRIMARY KEY,
                    document_hash TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                );
                """
            )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @property
    def revision(self) -> int:
        """Counter bumped on every merchant write."""
        return self._revision

    # ------------------------------------------------------------------
    # Source patterns
    # ------------------------------------------------------------------

    def upsert_pattern(
        self,
        source_id: str,
        pattern: str,
        kind: PatternKind | str,
        accuracy: float,
        replacement: str | None = None,
    ) -> SourcePattern:
        """Insert a pattern or raise the accuracy of an existing one.

        Accuracy is blended as ``max(old, new)``; a repeated seed never
        lowers what feedback has learned.

        Args:
            source_id: Issuing source the pattern belongs to.
            pattern: Signature text, regex, or the word an OCR correction replaces.
            kind: Pattern kind.
            accuracy: Candidate accuracy in [0, 1].
            replacement: Replacement word for ``ocr_correction`` patterns.

        Returns:
            The stored pattern after the upsert.
        """
        kind = PatternKind(kind)
        accuracy = min(max(accuracy, 0.0), 1.0)
        with self._keys.hold(f"pattern:{source_id}:{pattern}"):
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT * FROM source_patterns WHERE source_id = ? AND pattern = ?",
                    (source_id, pattern),
                ).fetchone()
                if row:
                    conn.execute(
                        """
                        UPDATE source_patterns
                        SET accuracy = MAX(accuracy, ?), kind = ?,
                            replacement = COALESCE(?, replacement)
                        WHERE source_id = ? AND pattern = ?
                        """,
                        (accuracy, kind.value, replacement, source_id, pattern),
                    )
                else:
                    conn.execute(
                        """
                        INSERT INTO source_patterns
                        (source_id, pattern, kind, accuracy, usage_count, replacement)
                        VALUES (?, ?, ?, ?, 0, ?)
                        """,
                        (source_id, pattern, kind.value, accuracy, replacement),
                    )
                row = conn.execute(
                    "SELECT * FROM source_patterns WHERE source_id = ? AND pattern = ?",
                    (source_id, pattern),
                ).fetchone()
                return SourcePattern.from_row(row)

    def adjust_pattern_accuracy(
        self, source_id: str, pattern: str, target: float, rate: float = 0.1
    ) -> float | None:
        """Move a pattern's accuracy towards ``target`` by ``rate``.

        Returns:
            The new accuracy, or None when the pattern is unknown.
        """
        with self._keys.hold(f"pattern:{source_id}:{pattern}"):
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT accuracy FROM source_patterns WHERE source_id = ? AND pattern = ?",
                    (source_id, pattern),
                ).fetchone()
                if row is None:
                    return None
                updated = row["accuracy"] + rate * (target - row["accuracy"])
                updated = min(max(updated, 0.0), 1.0)
                conn.execute(
                    "UPDATE source_patterns SET accuracy = ? WHERE source_id = ? AND pattern = ?",
                    (updated, source_id, pattern),
                )
        logger.debug("Pattern %s/%s accuracy -> %.3f", source_id, pattern, updated)
        return updated

    def record_pattern_use(self, source_id: str, pattern: str) -> None:
        """Bump usage count and last-used time after a successful match."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE source_patterns
                SET usage_count = usage_count + 1, last_used = ?
                WHERE source_id = ? AND pattern = ?
                """,
                (utc_now(), source_id, pattern),
            )

    def patterns_for_source(
        self, source_id: str, kind: PatternKind | str | None = None
    ) -> list[SourcePattern]:
        query = "SELECT * FROM source_patterns WHERE source_id = ?"
        params: tuple[Any, ...] = (source_id,)
        if kind is not None:
            query += " AND kind = ?"
            params += (PatternKind(kind).value,)
        with self._transaction() as conn:
            rows = conn.execute(query + " ORDER BY accuracy DESC, pattern", params).fetchall()
        return [SourcePattern.from_row(r) for r in rows]

    def patterns_by_kind(self, kind: PatternKind | str) -> list[SourcePattern]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM source_patterns WHERE kind = ? ORDER BY source_id, pattern",
                (PatternKind(kind).value,),
            ).fetchall()
        return [SourcePattern.from_row(r) for r in rows]

    def source_accuracy(self) -> dict[str, float]:
        """Mean pattern accuracy per source."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT source_id, AVG(accuracy) AS accuracy FROM source_patterns
                WHERE kind != ? GROUP BY source_id
                """,
                (PatternKind.OCR_CORRECTION.value,),
            ).fetchall()
        return {r["source_id"]: round(r["accuracy"], 4) for r in rows}

    # ------------------------------------------------------------------
    # Merchants
    # ------------------------------------------------------------------

    def get_merchant(self, normalized_name: str) -> MerchantRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM merchants WHERE normalized_name = ?", (normalized_name,)
            ).fetchone()
        return MerchantRecord.from_row(row) if row else None

    def find_by_alias(self, alias: str) -> MerchantRecord | None:
        """Resolve an alias (or a canonical key) to its merchant."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT m.* FROM merchant_aliases a
                JOIN merchants m ON m.normalized_name = a.normalized_name
                WHERE a.alias = ?
                """,
                (alias,),
            ).fetchone()
        return MerchantRecord.from_row(row) if row else None

    def _claim_aliases(
        self, conn: sqlite3.Connection, normalized_name: str, aliases: set[str]
    ) -> set[str]:
        """Register aliases for a merchant; aliases owned by another merchant are dropped."""
        claimed = set()
        for alias in aliases | {normalized_name}:
            if not alias:
                continue
            row = conn.execute(
                "SELECT normalized_name FROM merchant_aliases WHERE alias = ?", (alias,)
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO merchant_aliases (alias, normalized_name) VALUES (?, ?)",
                    (alias, normalized_name),
                )
                claimed.add(alias)
            elif row["normalized_name"] == normalized_name:
                claimed.add(alias)
        return claimed

    def _insert_merchant(self, conn: sqlite3.Connection, record: MerchantRecord) -> None:
        record.aliases = self._claim_aliases(conn, record.normalized_name, record.aliases)
        conn.execute(
            """
            INSERT INTO merchants
            (normalized_name, name, category, subcategory, confidence, aliases,
             occurrences, last_seen, metadata, version)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
            """,
            (
                record.normalized_name,
                record.name,
                record.category,
                record.subcategory,
                record.confidence,
                json.dumps(sorted(record.aliases)),
                record.occurrences,
                record.last_seen,
                json.dumps(record.metadata),
            ),
        )
        record.version = 0
        self._revision += 1

    def _write_merchant(self, record: MerchantRecord) -> None:
        """Write a record back if its version is unchanged since it was read."""
        with self._transaction() as conn:
            record.aliases = self._claim_aliases(conn, record.normalized_name, record.aliases)
            cursor = conn.execute(
                """
                UPDATE merchants
                SET name = ?, category = ?, subcategory = ?, confidence = ?, aliases = ?,
                    occurrences = ?, last_seen = ?, metadata = ?, version = version + 1
                WHERE normalized_name = ? AND version = ?
                """,
                (
                    record.name,
                    record.category,
                    record.subcategory,
                    record.confidence,
                    json.dumps(sorted(record.aliases)),
                    record.occurrences,
                    record.last_seen,
                    json.dumps(record.metadata),
                    record.normalized_name,
                    record.version,
                ),
            )
            if cursor.rowcount == 0:
                raise LearningStoreWriteConflict(
                    f"Merchant {record.normalized_name!r} changed since version {record.version}"
                )
            record.version += 1
            self._revision += 1

    def update_merchant(
        self,
        normalized_name: str,
        mutate: Callable[[MerchantRecord], None],
        create: Callable[[], MerchantRecord] | None = None,
    ) -> MerchantRecord | None:
        """Read-modify-write a merchant with optimistic version checking.

        A conflicting concurrent write is retried on a fresh read up to
        ``max_retries`` times.

        Args:
            normalized_name: Merchant key.
            mutate: Applied in place to the freshly read record.
            create: Builds the record when it does not exist yet; without
                it a missing merchant is left alone.

        Returns:
            The written record, or None when the merchant does not exist and
            no ``create`` callback was given.

        Raises:
            LearningStoreWriteConflict: When every retry conflicted.
        """
        with self._keys.hold(f"merchant:{normalized_name}"):
            for attempt in range(1, self.max_retries + 1):
                record = self.get_merchant(normalized_name)
                try:
                    if record is None:
                        if create is None:
                            return None
                        record = create()
                        mutate(record)
                        with self._transaction() as conn:
                            self._insert_merchant(conn, record)
                    else:
                        mutate(record)
                        self._write_merchant(record)
                    return record
                except (LearningStoreWriteConflict, sqlite3.IntegrityError) as e:
                    logger.warning(
                        "Write conflict on merchant %s (attempt %d/%d): %s",
                        normalized_name,
                        attempt,
                        self.max_retries,
                        e,
                    )
        raise LearningStoreWriteConflict(
            f"Merchant {normalized_name!r} still conflicting after {self.max_retries} attempts"
        )

    def upsert_merchant(self, record: MerchantRecord) -> MerchantRecord:
        """Insert a merchant or merge a new sighting into the existing one.

        Merging unions the aliases, bumps occurrences, and keeps the
        better-supported category: confidences are blended with ``max``
        and a user-corrected category is never displaced by a guess.
        """

        def merge(existing: MerchantRecord) -> None:
            existing.aliases |= record.aliases
            existing.occurrences += 1
            existing.last_seen = utc_now()
            new_score = max(existing.category_confidence(record.category), record.confidence)
            existing.set_category_confidence(existing.category, existing.confidence)
            existing.set_category_confidence(record.category, new_score)
            if record.category != existing.category:
                if not existing.metadata.get("user_corrected") and new_score > existing.confidence:
                    existing.category = record.category
                    existing.subcategory = record.subcategory
                    existing.confidence = new_score
            elif existing.subcategory is None:
                existing.subcategory = record.subcategory

        def create() -> MerchantRecord:
            record.occurrences = 0
            return record

        result = self.update_merchant(record.normalized_name, merge, create=create)
        if result is None:
            raise LearningStoreWriteConflict(
                f"Merchant {record.normalized_name!r} was not written"
            )
        return result

    def ensure_merchant(self, record: MerchantRecord) -> bool:
        """Insert a merchant only if its key is unknown.

        Returns:
            True when the record was inserted.
        """
        with self._keys.hold(f"merchant:{record.normalized_name}"):
            if self.get_merchant(record.normalized_name) is not None:
                return False
            with self._transaction() as conn:
                self._insert_merchant(conn, record)
        return True

    def touch_merchant(self, normalized_name: str) -> MerchantRecord | None:
        """Count one more sighting of a known merchant."""

        def touch(record: MerchantRecord) -> None:
            record.occurrences += 1
            record.last_seen = utc_now()

        return self.update_merchant(normalized_name, touch)

    def merchants_by_category(self, category: str) -> list[MerchantRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM merchants WHERE category = ? ORDER BY occurrences DESC, name",
                (category,),
            ).fetchall()
        return [MerchantRecord.from_row(r) for r in rows]

    def all_merchants(self) -> list[MerchantRecord]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM merchants ORDER BY normalized_name").fetchall()
        return [MerchantRecord.from_row(r) for r in rows]

    def snapshot(self) -> MerchantSnapshot:
        """Immutable view of every merchant, rebuilt only after writes."""
        with self._lock:
            if self._snapshot is not None and self._snapshot.revision == self._revision:
                return self._snapshot
            merchants = {r.normalized_name: r for r in self.all_merchants()}
            rows = self._conn.execute(
                "SELECT alias, normalized_name FROM merchant_aliases"
            ).fetchall()
            self._snapshot = MerchantSnapshot(
                revision=self._revision,
                merchants=MappingProxyType(merchants),
                alias_index=MappingProxyType({r["alias"]: r["normalized_name"] for r in rows}),
            )
            return self._snapshot

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def append_feedback(
        self, transaction_id: str, original: dict[str, Any], correction: dict[str, Any]
    ) -> FeedbackEntry:
        now = utc_now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO feedback (transaction_id, original, correction, timestamp, applied)
                VALUES (?, ?, ?, ?, 0)
                """,
                (transaction_id, json.dumps(original), json.dumps(correction), now),
            )
            entry_id = cursor.lastrowid
        return FeedbackEntry(
            id=entry_id,
            transaction_id=transaction_id,
            original=original,
            correction=correction,
            timestamp=now,
        )

    def recent_feedback(self, limit: int = 50) -> list[FeedbackEntry]:
        """Newest feedback entries first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM feedback ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [FeedbackEntry.from_row(r) for r in rows]

    def mark_feedback_applied(self, entry_id: int) -> None:
        with self._transaction() as conn:
            conn.execute("UPDATE feedback SET applied = 1 WHERE id = ?", (entry_id,))

    def feedback_count(self) -> int:
        with self._transaction() as conn:
            return conn.execute("SELECT COUNT(*) FROM feedback").fetchone()[0]

    # ------------------------------------------------------------------
    # Classifier weights
    # ------------------------------------------------------------------

    def save_weights(self, weights: ClassifierWeights) -> int:
        """Persist weights under the next version number.

        Returns:
            The stored version.
        """
        with self._keys.hold(f"weights:{weights.name}"):
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT version FROM classifier_weights WHERE name = ?", (weights.name,)
                ).fetchone()
                version = (row["version"] if row else 0) + 1
                weights.updated_at = utc_now()
                conn.execute(
                    """
                    INSERT INTO classifier_weights (name, version, weights, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(name) DO UPDATE SET
                        version = excluded.version,
                        weights = excluded.weights,
                        updated_at = excluded.updated_at
                    """,
                    (weights.name, version, weights.to_json(), weights.updated_at),
                )
        weights.version = version
        return version

    def load_weights(self, name: str) -> ClassifierWeights | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM classifier_weights WHERE name = ?", (name,)
            ).fetchone()
        return ClassifierWeights.from_row(row) if row else None

    # ------------------------------------------------------------------
    # Performance samples
    # ------------------------------------------------------------------

    def log_performance(self, sample: PerformanceSample) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO performance (operation, duration_ms, confidence, timestamp, metadata)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    sample.operation,
                    sample.duration_ms,
                    sample.confidence,
                    sample.timestamp,
                    json.dumps(sample.metadata),
                ),
            )

    def performance_samples(
        self, prefix: str | None = None, days: int | None = None
    ) -> list[PerformanceSample]:
        """Samples whose operation starts with ``prefix``, newer than ``days``."""
        query = "SELECT * FROM performance WHERE 1 = 1"
        params: list[Any] = []
        if prefix:
            query += " AND operation LIKE ?"
            params.append(prefix + "%")
        if days is not None:
            query += " AND timestamp >= ?"
            params.append(_cutoff(days))
        with self._transaction() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [PerformanceSample.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # OCR cache and emitted transactions
    # ------------------------------------------------------------------

    def get_ocr_cache(self, content_hash: str) -> OCRCacheEntry | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM ocr_cache WHERE content_hash = ?", (content_hash,)
            ).fetchone()
        return OCRCacheEntry.from_row(row) if row else None

    def put_ocr_cache(self, entry: OCRCacheEntry) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO ocr_cache
                (content_hash, text, confidence, method, page_count, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.content_hash,
                    entry.text,
                    entry.confidence,
                    entry.method,
                    entry.page_count,
                    entry.timestamp,
                ),
            )

    def save_transactions(self, document_hash: str, payloads: list[dict[str, Any]]) -> None:
        """Remember emitted transactions, keyed by their ``id`` field."""
        now = utc_now()
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO transactions (id, document_hash, payload, timestamp)
                VALUES (?, ?, ?, ?)
                """,
                [(p["id"], document_hash, json.dumps(p), now) for p in payloads],
            )

    def get_transaction(self, transaction_id: str) -> dict[str, Any] | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT payload FROM transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
        return json.loads(row["payload"]) if row else None

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup(
        self,
        min_occurrences: int = 2,
        unseen_days: int = 180,
        feedback_keep: int = 1000,
        performance_days: int = 90,
        ocr_cache_days: int = 90,
    ) -> dict[str, int]:
        """Apply retention rules.

        Removes rarely seen merchants not seen for ``unseen_days`` (seeded
        and user-corrected merchants are kept), trims feedback to the newest
        ``feedback_keep`` entries, and drops old performance samples and
        cache entries.

        Returns:
            Number of rows removed per collection.
        """
        merchant_cutoff = _cutoff(unseen_days)
        removed: dict[str, int] = {}
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT normalized_name, metadata FROM merchants "
                "WHERE occurrences < ? AND last_seen < ?",
                (min_occurrences, merchant_cutoff),
            ).fetchall()
            stale = []
            for row in rows:
                metadata = json.loads(row["metadata"]) if row["metadata"] else {}
                if metadata.get("seeded") or metadata.get("user_corrected"):
                    continue
                stale.append(row["normalized_name"])
            for key in stale:
                conn.execute("DELETE FROM merchant_aliases WHERE normalized_name = ?", (key,))
                conn.execute("DELETE FROM merchants WHERE normalized_name = ?", (key,))
            removed["merchants"] = len(stale)
            if stale:
                self._revision += 1

            removed["feedback"] = conn.execute(
                """
                DELETE FROM feedback WHERE id NOT IN
                (SELECT id FROM feedback ORDER BY id DESC LIMIT ?)
                """,
                (feedback_keep,),
            ).rowcount
            removed["performance"] = conn.execute(
                "DELETE FROM performance WHERE timestamp < ?", (_cutoff(performance_days),)
            ).rowcount
            removed["ocr_cache"] = conn.execute(
                "DELETE FROM ocr_cache WHERE timestamp < ?", (_cutoff(ocr_cache_days),)
            ).rowcount

        logger.info("Cleanup removed %s", removed)
        return removed

    def stats(self) -> dict[str, int]:
        """Row count per collection."""
        tables = [
            "source_patterns",
            "merchants",
            "merchant_aliases",
            "feedback",
            "classifier_weights",
            "performance",
            "ocr_cache",
            "transactions",
        ]
        with self._transaction() as conn:
            return {t: conn.execute(f"SELECT COUNT(*) FROM {t}").fetchone()[0] for t in tables}

    def export_data(self) -> dict[str, Any]:
        """JSON-safe dump of patterns, merchants and classifier weights."""
        with self._transaction() as conn:
            pattern_rows = conn.execute("SELECT * FROM source_patterns").fetchall()
            weight_rows = conn.execute("SELECT * FROM classifier_weights").fetchall()
        return {
            "format_version": EXPORT_FORMAT_VERSION,
            "exported_at": utc_now(),
            "patterns": [SourcePattern.from_row(r).to_dict() for r in pattern_rows],
            "merchants": [m.to_dict() for m in self.all_merchants()],
            "weights": [
                {
                    "name": r["name"],
                    "version": r["version"],
                    "weights": json.loads(r["weights"]),
                    "updated_at": r["updated_at"],
                }
                for r in weight_rows
            ],
        }

    def import_data(self, data: dict[str, Any]) -> dict[str, int]:
        """Merge an :meth:`export_data` dump into this store.

        Patterns and merchants go through the blended upserts; weights are
        taken only when the dump carries a newer version.

        Returns:
            Number of records merged per collection.
        """
        if data.get("format_version") != EXPORT_FORMAT_VERSION:
            raise ValueError(f"Unsupported export format: {data.get('format_version')!r}")

        counts = {"patterns": 0, "merchants": 0, "weights": 0}
        for item in data.get("patterns", []):
            self.upsert_pattern(
                item["source_id"],
                item["pattern"],
                item["kind"],
                float(item["accuracy"]),
                replacement=item.get("replacement"),
            )
            counts["patterns"] += 1

        for item in data.get("merchants", []):
            self.upsert_merchant(MerchantRecord.from_dict(item))
            counts["merchants"] += 1

        for item in data.get("weights", []):
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT version FROM classifier_weights WHERE name = ?", (item["name"],)
                ).fetchone()
                if row is not None and row["version"] >= item["version"]:
                    continue
                conn.execute(
                    "INSERT OR REPLACE INTO classifier_weights (name, version, weights, updated_at) "
                    "VALUES (?, ?, ?, ?)",
                    (item["name"], item["version"], json.dumps(item["weights"]), item["updated_at"]),
                )
            counts["weights"] += 1

        logger.info("Imported %s", counts)
        return counts
