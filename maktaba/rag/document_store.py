"""SQLite document registry.

Keeps one row per uploaded PDF with its ingestion status, page count and
chunk count. Status moves forward only (pending -> processing ->
completed), except that processing may fail and a failed document may be
reprocessed.
"""

import logging
import sqlite3
from pathlib import Path

from maktaba.exceptions import StorageError
from maktaba.models import Document, EmbeddingStatus, Language

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    EmbeddingStatus.PENDING: {EmbeddingStatus.PROCESSING},
    EmbeddingStatus.PROCESSING: {EmbeddingStatus.COMPLETED, EmbeddingStatus.FAILED},
    EmbeddingStatus.COMPLETED: set(),
    EmbeddingStatus.FAILED: {EmbeddingStatus.PROCESSING},
}


class DocumentRegistry:
    """Document table backed by a local sqlite file."""

    def __init__(self, db_path: Path | str = Path("data/library.db")) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(exist_ok=True, parents=True)
        self._create_tables()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _create_tables(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    total_pages INTEGER,
                    embedding_status TEXT NOT NULL DEFAULT 'pending',
                    chunks_count INTEGER NOT NULL DEFAULT 0,
                    is_selected INTEGER NOT NULL DEFAULT 1,
                    language TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.commit()

    @staticmethod
    def _to_document(row: sqlite3.Row) -> Document:
        return Document(
            id=row["id"],
            display_name=row["display_name"],
            total_pages=row["total_pages"],
            embedding_status=EmbeddingStatus(row["embedding_status"]),
            chunks_count=row["chunks_count"],
            is_selected=bool(row["is_selected"]),
            language=Language(row["language"]) if row["language"] else None,
        )

    def register(self, document_id: str, display_name: str) -> Document:
        """Insert a pending document, or return the existing row unchanged."""
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO documents (id, display_name) VALUES (?, ?)",
                (document_id, display_name),
            )
            conn.commit()
        return self.get(document_id)

    def get(self, document_id: str) -> Document:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
        if row is None:
            raise StorageError(f"Unknown document: {document_id}")
        return self._to_document(row)

    def list_documents(self, selected_only: bool = False) -> list[Document]:
        query = "SELECT * FROM documents"
        if selected_only:
            query += " WHERE is_selected = 1"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at, id").fetchall()
        return [self._to_document(row) for row in rows]

    def _update(self, document_id: str, column: str, value) -> None:
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE documents SET {column} = ?, updated_at = CURRENT_TIMESTAMP "
                "WHERE id = ?",
                (value, document_id),
            )
            conn.commit()
        if cursor.rowcount == 0:
            raise StorageError(f"Unknown document: {document_id}")

    def set_status(self, document_id: str, status: EmbeddingStatus) -> None:
        current = self.get(document_id).embedding_status
        if status == current:
            return
        if status not in ALLOWED_TRANSITIONS[current]:
            raise StorageError(
                f"Illegal status transition for {document_id}: "
                f"{current.value} -> {status.value}"
            )
        self._update(document_id, "embedding_status", status.value)
        logger.info(f"Document {document_id}: {current.value} -> {status.value}")

    def set_total_pages(self, document_id: str, total_pages: int) -> None:
        current = self.get(document_id).total_pages
        if current is not None and current != total_pages:
            raise StorageError(
                f"total_pages already set for {document_id} ({current})"
            )
        self._update(document_id, "total_pages", total_pages)

    def set_chunks_count(self, document_id: str, chunks_count: int) -> None:
        self._update(document_id, "chunks_count", chunks_count)

    def set_language(self, document_id: str, language: Language) -> None:
        self._update(document_id, "language", language.value)

    def set_selected(self, document_id: str, selected: bool) -> None:
        self._update(document_id, "is_selected", int(selected))

    def delete(self, document_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
            conn.commit()
