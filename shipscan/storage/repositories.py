"""Repositories for shipping records, clients and registrations.

Records and registrations are stored as JSON documents next to the indexed
columns used for filtering.
"""

import sqlite3
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta

from shipscan.records.models import (
    Client,
    Registration,
    RegistrationStatus,
    ShippingRecord,
)
from shipscan.storage.database import Database
from shipscan.storage.pagination import Page, PageRequest, paginate
from shipscan.utils.logger import get_logger

logger = get_logger(__name__)

_RECORD_SORT_COLUMNS: dict[str, str] = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "barcodeNumber": "barcode_number",
    "clientName": "client_name",
    "invoiceType": "invoice_type",
}

_CLIENT_SORT_COLUMNS: dict[str, str] = {
    "createdAt": "c.created_at",
    "updatedAt": "c.updated_at",
    "name": "c.name",
    "recordsCount": "records_count",
}


class ConflictError(Exception):
    """Raised on uniqueness or referential conflicts."""


def _now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


def _like(term: str) -> str:
    escaped = term.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _search_text(record: ShippingRecord) -> str:
    parts = [
        record.client_name,
        record.tracking.barcode_number,
        record.tracking.internal_number,
        record.tracking.distribution_code,
        *record.tracking.barcode_numbers,
        *record.tracking.internal_numbers,
        record.sender.name,
        record.sender.phone,
        record.sender.email,
        record.recipient.name,
        record.recipient.phone,
        record.recipient.address,
        record.additional_info,
        *(item.name for item in record.contents),
    ]
    return " ".join(p for p in parts if p).lower()


@dataclass
class RecordQuery:
    """Filters for listing shipping records."""

    barcode: str | None = None
    search: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    invoice_type: str | None = None
    client_name: str | None = None
    page: int = 1
    size: int = 10
    sort: str = "createdAt"
    order: str = "desc"


class RecordRepository:
    """CRUD access to shipping records."""

    def __init__(self, db: Database) -> None:
        self.db = db

    @staticmethod
    def _from_row(row: sqlite3.Row) -> ShippingRecord:
        return ShippingRecord.model_validate_json(row["data"])

    def create(self, record: ShippingRecord) -> ShippingRecord:
        now = _now()
        stored = record.model_copy(
            update={"id": _new_id(), "created_at": now, "updated_at": now}
        )
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO records (id, client_name, barcode_number, invoice_type,
                                     search_text, data, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    stored.id,
                    stored.client_name,
                    stored.tracking.barcode_number,
                    stored.invoice_type.value,
                    _search_text(stored),
                    stored.model_dump_json(by_alias=True),
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
        logger.info("Created record %s for client %s", stored.id, stored.client_name)
        return stored

    def get(self, record_id: str) -> ShippingRecord | None:
        row = self.db.query_one("SELECT data FROM records WHERE id = ?", (record_id,))
        return self._from_row(row) if row else None

    def update(self, record: ShippingRecord) -> ShippingRecord | None:
        """Replace a stored record; returns None if the id does not exist."""
        if record.id is None:
            return None
        stored = record.model_copy(update={"updated_at": _now()})
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE records
                SET client_name = ?, barcode_number = ?, invoice_type = ?,
                    search_text = ?, data = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    stored.client_name,
                    stored.tracking.barcode_number,
                    stored.invoice_type.value,
                    _search_text(stored),
                    stored.model_dump_json(by_alias=True),
                    stored.updated_at.isoformat(),
                    stored.id,
                ),
            )
        if cursor.rowcount == 0:
            return None
        logger.info("Updated record %s", stored.id)
        return stored

    def delete(self, record_id: str) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM records WHERE id = ?", (record_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted record %s", record_id)
        return deleted

    def references_image(self, url: str) -> bool:
        """Whether any stored record points at the image ``url``."""
        row = self.db.query_one(
            """
            SELECT 1 FROM records
            WHERE json_extract(data, '$.imageUrl') = ?
               OR EXISTS (SELECT 1 FROM json_each(records.data, '$.imageUrls') WHERE value = ?)
            LIMIT 1
            """,
            (url, url),
        )
        return row is not None

    def _where(self, query: RecordQuery) -> tuple[str, list]:
        clauses: list[str] = []
        params: list = []

        if query.barcode:
            clauses.append(
                "(barcode_number = ? OR EXISTS (SELECT 1 FROM json_each(records.data, "
                "'$.tracking.barcodeNumbers') WHERE value = ?))"
            )
            params.extend([query.barcode, query.barcode])
        if query.search and query.search.strip():
            clauses.append("search_text LIKE ? ESCAPE '\\'")
            params.append(_like(query.search.strip()))
        if query.date_from:
            clauses.append("created_at >= ?")
            params.append(query.date_from.isoformat())
        if query.date_to:
            clauses.append("created_at < ?")
            params.append((query.date_to + timedelta(days=1)).isoformat())
        if query.invoice_type:
            clauses.append("invoice_type = ?")
            params.append(query.invoice_type)
        if query.client_name:
            clauses.append("client_name = ? COLLATE NOCASE")
            params.append(query.client_name)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def list_page(self, query: RecordQuery) -> Page:
        """Filtered, sorted page of records."""
        request = PageRequest(
            page=query.page,
            size=query.size,
            sort=query.sort if query.sort in _RECORD_SORT_COLUMNS else "createdAt",
            order=query.order,
            search=query.search or "",
        )
        where, params = self._where(query)
        column = _RECORD_SORT_COLUMNS[request.sort]

        total_row = self.db.query_one(f"SELECT COUNT(*) AS n FROM records {where}", params)
        rows = self.db.query(
            f"SELECT data FROM records {where} "
            f"ORDER BY {column} {request.order.upper()}, rowid {request.order.upper()} "
            "LIMIT ? OFFSET ?",
            [*params, request.size, request.offset],
        )
        total = int(total_row["n"]) if total_row else 0
        return paginate([self._from_row(r) for r in rows], total, request)

    def all(self, query: RecordQuery | None = None) -> list[ShippingRecord]:
        """Every matching record, oldest first; used for export."""
        where, params = self._where(query or RecordQuery())
        rows = self.db.query(f"SELECT data FROM records {where} ORDER BY created_at, rowid", params)
        return [self._from_row(r) for r in rows]


class ClientRepository:
    """Clients own shipping records by name."""

    def __init__(self, db: Database) -> None:
        self.db = db

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Client:
        return Client(
            id=row["id"],
            name=row["name"],
            records_count=row["records_count"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    _SELECT = """
        SELECT c.id, c.name, c.created_at, c.updated_at,
               (SELECT COUNT(*) FROM records r
                WHERE r.client_name = c.name COLLATE NOCASE) AS records_count
        FROM clients c
    """

    def create(self, name: str) -> Client:
        name = name.strip()
        now = _now().isoformat()
        client_id = _new_id()
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    "INSERT INTO clients (id, name, created_at, updated_at) VALUES (?, ?, ?, ?)",
                    (client_id, name, now, now),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Client '{name}' already exists") from exc
        logger.info("Created client %s (%s)", name, client_id)
        return self.get(client_id)

    def get(self, client_id: str) -> Client | None:
        row = self.db.query_one(f"{self._SELECT} WHERE c.id = ?", (client_id,))
        return self._from_row(row) if row else None

    def list_page(self, request: PageRequest) -> Page:
        where, params = "", []
        if request.search:
            where = "WHERE lower(c.name) LIKE ? ESCAPE '\\'"
            params.append(_like(request.search))
        if request.sort not in _CLIENT_SORT_COLUMNS:
            request.sort = "createdAt"
        column = _CLIENT_SORT_COLUMNS[request.sort]

        total_row = self.db.query_one(f"SELECT COUNT(*) AS n FROM clients c {where}", params)
        rows = self.db.query(
            f"{self._SELECT} {where} ORDER BY {column} {request.order.upper()} LIMIT ? OFFSET ?",
            [*params, request.size, request.offset],
        )
        total = int(total_row["n"]) if total_row else 0
        return paginate([self._from_row(r) for r in rows], total, request)

    def rename(self, client_id: str, name: str) -> Client | None:
        """Rename a client and move its records to the new name."""
        current = self.get(client_id)
        if current is None:
            return None
        name = name.strip()
        now = _now().isoformat()
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    "UPDATE clients SET name = ?, updated_at = ? WHERE id = ?",
                    (name, now, client_id),
                )
                conn.execute(
                    """
                    UPDATE records
                    SET client_name = ?, data = json_set(data, '$.clientName', ?)
                    WHERE client_name = ? COLLATE NOCASE
                    """,
                    (name, name, current.name),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Client '{name}' already exists") from exc
        logger.info("Renamed client %s from %s to %s", client_id, current.name, name)
        return self.get(client_id)

    def delete(self, client_id: str) -> bool:
        """Delete a client that owns no records.

        Raises:
            ConflictError: If records still reference the client.
        """
        current = self.get(client_id)
        if current is None:
            return False
        if current.records_count > 0:
            raise ConflictError(
                f"Client '{current.name}' still has {current.records_count} record(s)"
            )
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM clients WHERE id = ?", (client_id,))
        logger.info("Deleted client %s", client_id)
        return True


class RegistrationRepository:
    """Business registrations from the intake form."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def find_submitted(self, email: str) -> Registration | None:
        row = self.db.query_one(
            "SELECT data FROM registrations WHERE email = ? AND status = ? LIMIT 1",
            (email.strip().lower(), RegistrationStatus.SUBMITTED.value),
        )
        return Registration.model_validate_json(row["data"]) if row else None

    def create(self, registration: Registration) -> Registration:
        """Store a registration.

        Raises:
            ConflictError: If the email already has a submitted registration.
        """
        now = _now()
        stored = registration.model_copy(
            update={"id": _new_id(), "created_at": now, "updated_at": now}
        )
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO registrations (id, email, status, data, submitted_at,
                                               created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        stored.id,
                        stored.email,
                        stored.status.value,
                        stored.model_dump_json(by_alias=True),
                        stored.submitted_at.isoformat() if stored.submitted_at else None,
                        now.isoformat(),
                        now.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(
                f"Registration for {stored.email} was already submitted"
            ) from exc
        logger.info("Stored registration %s for %s", stored.id, stored.email)
        return stored
