"""DuckDB Storage Adapter.

This adapter implements VectorStorePort and RecordStorePort on DuckDB, an
in-process analytical database. It persists encrypted embeddings, anonymized
clinical records (versioned) and audit events.

Security Impact:
    - Every embedding write stores the Fernet ciphertext of the vector; a
      failed encryption aborts the write, plaintext is never stored alone
    - Every query filters on owner_id; rows of another owner are reported as
      not-found and the attempt is sent to the audit sink
    - Only anonymized records are persisted, never raw resources
    - Audit trail is append-only for compliance

Architecture:
    - Implements VectorStorePort and RecordStorePort (Hexagonal Architecture)
    - Isolated from domain core - only depends on ports and models
    - One cursor per operation so concurrent callers never share a cursor;
      isolation comes from owner-scoped rows, not a global lock
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

import duckdb

from clinical_rag.domain.enums import AuditEventKind, AuditSeverity, AuditStatus, PHIKind
from clinical_rag.domain.models import (
    AnonymizedRecord,
    AuditRecord,
    ClinicalFacts,
    EmbeddingVector,
    StoredEmbedding,
)
from clinical_rag.domain.ports import (
    AuditSinkPort,
    DimensionMismatchError,
    EncryptionError,
    RecordStorePort,
    Result,
    StorageError,
    VectorStorePort,
)
from clinical_rag.domain.services.similarity import rank_candidates
from clinical_rag.infrastructure.config_manager import DatabaseConfig
from clinical_rag.infrastructure.encryption import EncryptionService

logger = logging.getLogger(__name__)

_EMBEDDING_COLUMNS = """
    embedding_id, owner_id, owner_record_id, vector, encrypted_vector, key_id,
    source_text_prefix, text_length, medical_terms, clinical_context, model,
    generated_at, created_at
"""

_RECORD_COLUMNS = """
    owner_id, source_id, version, resource_type, redacted_text, extracted_facts,
    content_hash, phi_detected, redacted_kinds, processed_at
"""


def _to_db_timestamp(value: datetime) -> datetime:
    """Naive UTC datetime for TIMESTAMP columns."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


class DuckDBVectorStore(VectorStorePort, RecordStorePort):
    """DuckDB implementation of the encrypted vector store and record store.

    Parameters:
        encryption_service: Encrypts vectors before they are persisted
        db_config: DatabaseConfig from configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:' for in-memory)
        dimensions: Fixed vector dimensionality for this store (None disables the check)
        audit_sink: Receives CROSS_OWNER_ACCESS_DENIED events

    Example Usage:
        ```python
        store = DuckDBVectorStore(EncryptionService(), db_path="data/vectors.duckdb", dimensions=1536)
        result = store.store("user-1", embedding)
        if result.is_success():
            hits = store.search_similar("user-1", query_vector, 5, 0.3)
        ```
    """

    def __init__(
        self,
        encryption_service: EncryptionService,
        db_config: Optional[DatabaseConfig] = None,
        db_path: Optional[str] = None,
        dimensions: Optional[int] = None,
        audit_sink: Optional[AuditSinkPort] = None,
    ):
        if db_config:
            if db_config.db_type != "duckdb":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match DuckDB adapter",
                    operation="__init__"
                )
            self.db_path = db_config.db_path or ":memory:"
        else:
            self.db_path = db_path or ":memory:"

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__"
                )

        self.encryption_service = encryption_service
        self.dimensions = dimensions
        self.audit_sink = audit_sink
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialized = False
        self._init_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Connection and schema
    # ------------------------------------------------------------------

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self.db_path)
                logger.info(f"Connected to DuckDB database: {self.db_path}")
            except Exception as e:
                raise StorageError(
                    f"Failed to connect to DuckDB: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path}
                ) from e
        return self._connection

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        """New cursor for one operation, initializing the schema on first use."""
        with self._init_lock:
            if not self._initialized:
                init_result = self.initialize_schema()
                if not init_result.is_success():
                    raise StorageError(init_result.error, operation="initialize_schema")
            return self._get_connection().cursor()

    def initialize_schema(self) -> Result[None]:
        """Create tables, sequence and indexes.

        Creates tables for:
        - embeddings: plaintext + encrypted vectors, owner-scoped
        - clinical_records: anonymized records, one row per version
        - audit_log: immutable audit trail
        """
        try:
            conn = self._get_connection()

            conn.execute("CREATE SEQUENCE IF NOT EXISTS embedding_seq START 1")
            conn.execute("CREATE SEQUENCE IF NOT EXISTS audit_seq START 1")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS embeddings (
                    embedding_id VARCHAR PRIMARY KEY,
                    seq BIGINT NOT NULL DEFAULT nextval('embedding_seq'),
                    owner_id VARCHAR NOT NULL,
                    owner_record_id VARCHAR NOT NULL,
                    vector DOUBLE[] NOT NULL,
                    dimensions INTEGER NOT NULL,
                    encrypted_vector BLOB NOT NULL,
                    key_id VARCHAR NOT NULL,
                    source_text_prefix VARCHAR,
                    text_length INTEGER,
                    medical_terms VARCHAR,
                    clinical_context VARCHAR NOT NULL,
                    model VARCHAR NOT NULL,
                    generated_at TIMESTAMP NOT NULL,
                    created_at TIMESTAMP NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS clinical_records (
                    owner_id VARCHAR NOT NULL,
                    source_id VARCHAR NOT NULL,
                    version INTEGER NOT NULL,
                    resource_type VARCHAR NOT NULL,
                    redacted_text VARCHAR NOT NULL,
                    extracted_facts VARCHAR,
                    content_hash VARCHAR NOT NULL,
                    phi_detected BOOLEAN NOT NULL,
                    redacted_kinds VARCHAR,
                    processed_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (owner_id, source_id, version)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_log (
                    audit_id VARCHAR PRIMARY KEY,
                    seq BIGINT NOT NULL DEFAULT nextval('audit_seq'),
                    event_kind VARCHAR NOT NULL,
                    owner_id VARCHAR,
                    action VARCHAR NOT NULL,
                    details VARCHAR,
                    status VARCHAR NOT NULL,
                    severity VARCHAR NOT NULL DEFAULT 'info',
                    event_timestamp TIMESTAMP NOT NULL
                )
            """)
            # Audit logs written before severity was recorded
            conn.execute(
                "ALTER TABLE audit_log ADD COLUMN IF NOT EXISTS severity VARCHAR DEFAULT 'info'"
            )

            conn.execute("CREATE INDEX IF NOT EXISTS idx_embeddings_owner ON embeddings(owner_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_records_owner ON clinical_records(owner_id, source_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_kind ON audit_log(event_kind)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(event_timestamp)")

            self._initialized = True
            logger.info("Database schema initialized successfully")
            return Result.success_result(None)

        except Exception as e:
            error_msg = f"Failed to initialize schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError"
            )

    # ------------------------------------------------------------------
    # VectorStorePort
    # ------------------------------------------------------------------

    def store(self, owner_id: str, embedding: EmbeddingVector) -> Result[StoredEmbedding]:
        """Encrypt and persist one embedding.

        Returns:
            Result[StoredEmbedding]: Failure types are DimensionMismatchError,
                EncryptionError and StorageError
        """
        if self.dimensions is not None and embedding.dimensions != self.dimensions:
            error = DimensionMismatchError(
                f"Embedding has {embedding.dimensions} dimensions, store requires {self.dimensions}",
                expected=self.dimensions,
                actual=embedding.dimensions,
            )
            logger.warning(str(error))
            return Result.failure_result(
                error,
                error_details={"embedding_id": embedding.id, "expected": self.dimensions,
                               "actual": embedding.dimensions}
            )

        try:
            ciphertext = self.encryption_service.encrypt_vector(embedding.vector)
        except EncryptionError as e:
            logger.error(f"Refusing to store embedding {embedding.id}: encryption failed")
            return Result.failure_result(e, error_details={"embedding_id": embedding.id})

        stored = StoredEmbedding.from_embedding(
            embedding,
            owner_id=owner_id,
            encrypted_vector=ciphertext,
            key_id=self.encryption_service.get_key_id(),
        )

        try:
            cursor = self._cursor()
            try:
                cursor.execute(f"""
                    INSERT INTO embeddings ({_EMBEDDING_COLUMNS}, dimensions)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, [
                    stored.id,
                    owner_id,
                    stored.owner_record_id,
                    list(stored.vector),
                    stored.encrypted_vector,
                    stored.key_id,
                    stored.source_text_prefix,
                    stored.text_length,
                    json.dumps(list(stored.medical_terms)),
                    stored.clinical_context.value,
                    stored.model,
                    _to_db_timestamp(stored.generated_at),
                    _to_db_timestamp(stored.created_at),
                    stored.dimensions,
                ])
            finally:
                cursor.close()
        except Exception as e:
            error_msg = f"Failed to store embedding: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="store"),
                error_type="StorageError",
                error_details={"embedding_id": embedding.id}
            )

        logger.debug(f"Stored embedding {stored.id} for owner {owner_id}")
        return Result.success_result(stored)

    def get(self, owner_id: str, embedding_id: str) -> Optional[StoredEmbedding]:
        row = self._fetch_one(
            f"SELECT {_EMBEDDING_COLUMNS} FROM embeddings WHERE embedding_id = ?",
            [embedding_id],
            operation="get",
        )
        if row is None:
            return None
        if row[1] != owner_id:
            self._deny_cross_owner(owner_id, "get_embedding", embedding_id)
            return None
        return self._row_to_embedding(row)

    def delete(self, owner_id: str, embedding_id: str) -> bool:
        try:
            cursor = self._cursor()
            try:
                existing = cursor.execute(
                    "SELECT owner_id FROM embeddings WHERE embedding_id = ?", [embedding_id]
                ).fetchone()
                if existing is None:
                    return False
                if existing[0] != owner_id:
                    self._deny_cross_owner(owner_id, "delete_embedding", embedding_id)
                    return False
                cursor.execute(
                    "DELETE FROM embeddings WHERE embedding_id = ? AND owner_id = ?",
                    [embedding_id, owner_id]
                )
            finally:
                cursor.close()
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to delete embedding: {str(e)}", operation="delete") from e

        logger.info(f"Deleted embedding {embedding_id} for owner {owner_id}")
        return True

    def list_by_owner(self, owner_id: str, limit: int = 100) -> list[StoredEmbedding]:
        rows = self._fetch_all(
            f"SELECT {_EMBEDDING_COLUMNS} FROM embeddings WHERE owner_id = ? "
            f"ORDER BY seq DESC LIMIT {max(0, int(limit))}",
            [owner_id],
            operation="list_by_owner",
        )
        return [self._row_to_embedding(row) for row in rows]

    def search_similar(
        self,
        owner_id: str,
        query_vector: Sequence[float],
        match_count: int,
        threshold: float
    ) -> list[tuple[StoredEmbedding, float]]:
        """Owner-scoped cosine ranking over the plaintext vector column.

        Scoring stays in rank_candidates rather than DuckDB's
        list_cosine_similarity: every store then shares the zero-norm score of
        0, the strict threshold and the skip-and-warn handling of mixed
        dimensionality (list_cosine_similarity raises on it). Only ids and
        vectors are scanned; full rows are loaded for the top hits alone.
        Rows are read in insertion order so equal scores keep storage order.
        """
        rows = self._fetch_all(
            "SELECT embedding_id, vector FROM embeddings WHERE owner_id = ? ORDER BY seq",
            [owner_id],
            operation="search",
        )
        ranked = rank_candidates(query_vector, [(row[0], row[1]) for row in rows], match_count, threshold)
        if not ranked:
            return []

        ids = [embedding_id for embedding_id, _ in ranked]
        placeholders = ", ".join("?" for _ in ids)
        full_rows = self._fetch_all(
            f"SELECT {_EMBEDDING_COLUMNS} FROM embeddings "
            f"WHERE owner_id = ? AND embedding_id IN ({placeholders})",
            [owner_id, *ids],
            operation="search",
        )
        by_id = {row[0]: row for row in full_rows}
        return [
            (self._row_to_embedding(by_id[embedding_id]), score)
            for embedding_id, score in ranked
            if embedding_id in by_id
        ]

    def get_decrypted_vector(self, owner_id: str, embedding_id: str) -> Optional[list[float]]:
        """Decrypt the stored ciphertext of one embedding.

        Raises:
            EncryptionError: If the ciphertext cannot be decrypted with this store's key
        """
        stored = self.get(owner_id, embedding_id)
        if stored is None:
            return None
        return self.encryption_service.decrypt_vector(stored.encrypted_vector)

    def count_embeddings(self, owner_id: Optional[str] = None) -> int:
        if owner_id is None:
            row = self._fetch_one("SELECT COUNT(*) FROM embeddings", [], operation="count")
        else:
            row = self._fetch_one(
                "SELECT COUNT(*) FROM embeddings WHERE owner_id = ?", [owner_id], operation="count"
            )
        return int(row[0]) if row else 0

    # ------------------------------------------------------------------
    # RecordStorePort
    # ------------------------------------------------------------------

    def save_record(self, owner_id: str, record: AnonymizedRecord) -> Result[AnonymizedRecord]:
        """Persist a new version of an anonymized record.

        The stored version is one past the latest version for (owner, source_id),
        regardless of the version on the incoming record.
        """
        try:
            cursor = self._cursor()
            try:
                cursor.begin()
                try:
                    latest = cursor.execute(
                        "SELECT COALESCE(MAX(version), 0) FROM clinical_records "
                        "WHERE owner_id = ? AND source_id = ?",
                        [owner_id, record.source_id]
                    ).fetchone()[0]
                    saved = record.model_copy(update={"version": int(latest) + 1})
                    cursor.execute(f"""
                        INSERT INTO clinical_records ({_RECORD_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, [
                        owner_id,
                        saved.source_id,
                        saved.version,
                        saved.resource_type,
                        saved.redacted_text,
                        saved.extracted_facts.model_dump_json(),
                        saved.content_hash,
                        saved.phi_detected,
                        json.dumps(sorted(kind.value for kind in saved.redacted_kinds)),
                        _to_db_timestamp(saved.processed_at),
                    ])
                    cursor.commit()
                except Exception:
                    cursor.rollback()
                    raise
            finally:
                cursor.close()
        except Exception as e:
            error_msg = f"Failed to save record: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="save_record"),
                error_type="StorageError",
                error_details={"source_id": record.source_id}
            )

        logger.debug(f"Saved record {saved.source_id} v{saved.version} for owner {owner_id}")
        return Result.success_result(saved)

    def get_record(self, owner_id: str, source_id: str) -> Optional[AnonymizedRecord]:
        row = self._fetch_one(
            f"SELECT {_RECORD_COLUMNS} FROM clinical_records "
            "WHERE owner_id = ? AND source_id = ? ORDER BY version DESC LIMIT 1",
            [owner_id, source_id],
            operation="get_record",
        )
        if row is not None:
            return self._row_to_record(row)

        other = self._fetch_one(
            "SELECT 1 FROM clinical_records WHERE source_id = ? AND owner_id <> ? LIMIT 1",
            [source_id, owner_id],
            operation="get_record",
        )
        if other is not None:
            self._deny_cross_owner(owner_id, "get_record", source_id)
        return None

    # ------------------------------------------------------------------
    # Audit persistence
    # ------------------------------------------------------------------

    def persist_audit_events(self, events: list[AuditRecord]) -> Result[int]:
        """Append audit events in one transaction."""
        if not events:
            return Result.success_result(0)
        try:
            cursor = self._cursor()
            try:
                cursor.begin()
                try:
                    cursor.executemany("""
                        INSERT INTO audit_log (
                            audit_id, event_kind, owner_id, action, details, status, severity,
                            event_timestamp
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """, [
                        [
                            event.audit_id,
                            event.event_kind.value,
                            event.owner_id,
                            event.action,
                            json.dumps(event.details, default=str),
                            event.status.value,
                            event.severity.value,
                            _to_db_timestamp(event.timestamp),
                        ]
                        for event in events
                    ])
                    cursor.commit()
                except Exception:
                    cursor.rollback()
                    raise
            finally:
                cursor.close()
        except Exception as e:
            error_msg = f"Failed to persist audit events: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="persist_audit_events"),
                error_type="StorageError"
            )

        logger.debug(f"Persisted {len(events)} audit event(s)")
        return Result.success_result(len(events))

    def load_audit_events(self, limit: Optional[int] = None) -> list[AuditRecord]:
        """Persisted audit events, oldest first."""
        query = (
            "SELECT audit_id, event_kind, owner_id, action, details, status, event_timestamp, "
            "COALESCE(severity, 'info') "
            "FROM audit_log ORDER BY event_timestamp, seq"
        )
        if limit is not None:
            query += f" LIMIT {max(0, int(limit))}"
        rows = self._fetch_all(query, [], operation="load_audit_events")
        return [
            AuditRecord(
                audit_id=row[0],
                event_kind=AuditEventKind(row[1]),
                owner_id=row[2],
                action=row[3],
                details=json.loads(row[4]) if row[4] else {},
                status=AuditStatus(row[5]),
                timestamp=_from_db_timestamp(row[6]),
                severity=AuditSeverity(row[7]),
            )
            for row in rows
        ]

    def close(self) -> None:
        """Close storage connection and release resources."""
        if self._connection is not None:
            try:
                self._connection.close()
                self._connection = None
                self._initialized = False
                logger.info("Closed DuckDB connection")
            except Exception as e:
                logger.warning(f"Error closing connection: {str(e)}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fetch_one(self, query: str, params: list, operation: str) -> Optional[tuple]:
        try:
            cursor = self._cursor()
            try:
                return cursor.execute(query, params).fetchone()
            finally:
                cursor.close()
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"{operation} failed: {str(e)}", operation=operation) from e

    def _fetch_all(self, query: str, params: list, operation: str) -> list[tuple]:
        try:
            cursor = self._cursor()
            try:
                return cursor.execute(query, params).fetchall()
            finally:
                cursor.close()
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"{operation} failed: {str(e)}", operation=operation) from e

    def _deny_cross_owner(self, owner_id: str, action: str, target_id: str) -> None:
        logger.warning(f"Denied cross-owner {action} by owner {owner_id}")
        if self.audit_sink is None:
            return
        try:
            self.audit_sink.emit(AuditRecord(
                event_kind=AuditEventKind.CROSS_OWNER_ACCESS_DENIED,
                owner_id=owner_id,
                action=action,
                details={"target_id": target_id},
                status=AuditStatus.FAILURE,
            ))
        except Exception as e:
            logger.error(f"Audit sink rejected cross-owner event: {e}", exc_info=True)

    @staticmethod
    def _row_to_embedding(row: tuple) -> StoredEmbedding:
        return StoredEmbedding(
            id=row[0],
            owner_id=row[1],
            owner_record_id=row[2],
            vector=list(row[3]),
            encrypted_vector=bytes(row[4]),
            key_id=row[5],
            source_text_prefix=row[6] or "",
            text_length=row[7] or 0,
            medical_terms=tuple(json.loads(row[8])) if row[8] else (),
            clinical_context=row[9],
            model=row[10],
            generated_at=_from_db_timestamp(row[11]),
            created_at=_from_db_timestamp(row[12]),
        )

    @staticmethod
    def _row_to_record(row: tuple) -> AnonymizedRecord:
        return AnonymizedRecord(
            source_id=row[1],
            version=row[2],
            resource_type=row[3],
            redacted_text=row[4],
            extracted_facts=ClinicalFacts.model_validate_json(row[5]) if row[5] else ClinicalFacts(),
            content_hash=row[6],
            phi_detected=bool(row[7]),
            redacted_kinds=frozenset(PHIKind(k) for k in json.loads(row[8])) if row[8] else frozenset(),
            processed_at=_from_db_timestamp(row[9]),
        )
