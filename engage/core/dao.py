"""
SQLite-backed durable store for local runs and tests.
Plays the part of the hosted document database: JSON documents per collection,
submission documents validated before they are written.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from .db import get_db, init_db
from .stores import DocumentNotFoundError, IDurableStore, PermissionDeniedError, StoreError
from ..api.schemas import SubmissionDocument
from ..util.logging import logger

Trigger = Callable[[str, str, Optional[Dict[str, Any]], Optional[Dict[str, Any]]], Awaitable[None]]


class SqliteDurableStore(IDurableStore):
    """IDurableStore over a single SQLite `documents` table."""

    def __init__(self, db_path: str = None, read_only_collections=None):
        self.db_path = db_path
        # Collections whose writes are refused, the way security rules would
        self.read_only_collections = set(read_only_collections or [])
        self._triggers: List[Trigger] = []
        init_db(db_path)

    def on_write(self, trigger: "Trigger") -> None:
        """Register an async callback run after every committed write, like a document trigger.

        Called as trigger(collection, doc_id, before, after); after is None on delete.
        """
        self._triggers.append(trigger)

    async def _fire(self, collection: str, doc_id: str, before, after) -> None:
        for trigger in self._triggers:
            try:
                await trigger(collection, doc_id, before, after)
            except Exception as e:
                # Triggers run detached from the client write; their failure does not undo it
                logger.log_operation("document_trigger", "failure", {
                    "collection": collection, "doc_id": doc_id, "error": str(e)
                }, level=logging.ERROR)

    def _check_writable(self, collection: str):
        if collection in self.read_only_collections:
            raise PermissionDeniedError(f"Missing or insufficient permissions to write {collection}")

    def _validate(self, collection: str, data: Dict[str, Any]) -> Dict[str, Any]:
        if collection != "submissions":
            return data
        try:
            SubmissionDocument(**data)
        except ValidationError as e:
            logger.error(f"Schema validation failed for submission write: {e}")
            raise StoreError(f"Invalid submission document: {e.errors()[0].get('msg', 'invalid')}") from e
        return data

    def _read(self, conn: sqlite3.Connection, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        cursor = conn.cursor()
        cursor.execute(
            "SELECT data FROM documents WHERE collection = ? AND id = ?",
            (collection, doc_id)
        )
        row = cursor.fetchone()
        if not row:
            return None
        data = json.loads(row[0])
        data["id"] = doc_id
        return data

    def _write(self, conn: sqlite3.Connection, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        body = {k: v for k, v in data.items() if k != "id"}
        conn.execute(
            "INSERT OR REPLACE INTO documents (collection, id, data, updated_at) VALUES (?, ?, ?, ?)",
            (collection, doc_id, json.dumps(body, default=str), datetime.now().isoformat())
        )
        conn.commit()

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        if not doc_id:
            return None
        try:
            with get_db(self.db_path) as conn:
                return self._read(conn, collection, doc_id)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read {collection}/{doc_id}: {e}") from e

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        self._check_writable(collection)
        self._validate(collection, data)
        doc_id = data.get("id") or uuid.uuid4().hex[:20]
        try:
            with get_db(self.db_path) as conn:
                self._write(conn, collection, doc_id, data)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to add to {collection}: {e}") from e
        await self._fire(collection, doc_id, None, dict(data, id=doc_id))
        return doc_id

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self._check_writable(collection)
        self._validate(collection, data)
        try:
            with get_db(self.db_path) as conn:
                before = self._read(conn, collection, doc_id)
                self._write(conn, collection, doc_id, data)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to set {collection}/{doc_id}: {e}") from e
        await self._fire(collection, doc_id, before, dict(data, id=doc_id))

    async def update(self, collection: str, doc_id: str, patch: Dict[str, Any]) -> None:
        self._check_writable(collection)
        try:
            with get_db(self.db_path) as conn:
                before = self._read(conn, collection, doc_id)
                if before is None:
                    raise DocumentNotFoundError(f"No document to update: {collection}/{doc_id}")
                after = dict(before)
                after.update(patch)
                self._write(conn, collection, doc_id, after)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to update {collection}/{doc_id}: {e}") from e
        await self._fire(collection, doc_id, before, after)

    async def query(self, collection: str, **equals) -> List[Dict[str, Any]]:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT id, data FROM documents WHERE collection = ? ORDER BY id", (collection,))
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to query {collection}: {e}") from e

        results = []
        for doc_id, body in rows:
            data = json.loads(body)
            data["id"] = doc_id
            if all(data.get(field) == value for field, value in equals.items()):
                results.append(data)
        return results

    async def delete(self, collection: str, doc_id: str) -> None:
        self._check_writable(collection)
        try:
            with get_db(self.db_path) as conn:
                before = self._read(conn, collection, doc_id)
                conn.execute("DELETE FROM documents WHERE collection = ? AND id = ?", (collection, doc_id))
                conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to delete {collection}/{doc_id}: {e}") from e
        if before is not None:
            await self._fire(collection, doc_id, before, None)

    def count(self, collection: str = None) -> int:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            if collection:
                cursor.execute("SELECT COUNT(*) FROM documents WHERE collection = ?", (collection,))
            else:
                cursor.execute("SELECT COUNT(*) FROM documents")
            return cursor.fetchone()[0]
