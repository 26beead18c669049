"""
Record store for Contact rows.

Every request runs inside ``ContactStore.transaction()``, which opens its
own connection and starts with ``BEGIN IMMEDIATE``. SQLite takes the write
lock at that point, so two resolutions never interleave their reads and
writes; the loser waits for ``busy_timeout`` and then fails with a
``TransientStoreError`` that callers retry from the beginning.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, List, Optional, TypeVar

from db_models import ContactRecord, LinkPrecedence
from db_setup import get_db_connection, init_db
from errors import StaleRecordError, TransientStoreError

T = TypeVar("T")

UPDATABLE_FIELDS = {"email", "phoneNumber", "linkedId", "linkPrecedence", "deletedAt"}


def to_local_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def format_timestamp(value: Optional[datetime] = None) -> str:
    """ISO-8601 text with fixed precision, so string order is time order."""
    value = datetime.now() if value is None else to_local_naive(value)
    return value.isoformat(timespec="microseconds")


def _is_lock_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


@contextmanager
def _translate_lock_errors() -> Iterator[None]:
    try:
        yield
    except sqlite3.OperationalError as e:
        if _is_lock_error(e):
            raise TransientStoreError(str(e)) from e
        raise


class ContactSession:
    """CRUD access to Contact rows through one open transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def _execute(self, query: str, params=()) -> sqlite3.Cursor:
        with _translate_lock_errors():
            return self.conn.execute(query, params)

    def _fetch(self, query: str, params=()) -> List[ContactRecord]:
        rows = self._execute(query, params).fetchall()
        return [ContactRecord(**dict(row)) for row in rows]

    def find_contacts(self, email: Optional[str] = None, phone: Optional[str] = None) -> List[ContactRecord]:
        """Live records whose email or phone number equals one of the given values."""
        conditions = []
        params = []
        if email:
            conditions.append("email = ?")
            params.append(email)
        if phone:
            conditions.append("phoneNumber = ?")
            params.append(phone)

        if not conditions:
            return []

        query = f"""
            SELECT * FROM Contact
            WHERE deletedAt IS NULL
            AND ({" OR ".join(conditions)})
            ORDER BY createdAt ASC, id ASC
        """
        return self._fetch(query, params)

    def get_contact(self, contact_id: int) -> Optional[ContactRecord]:
        records = self._fetch("SELECT * FROM Contact WHERE id = ?", (contact_id,))
        return records[0] if records else None

    def get_all_linked_contacts(self, primary_id: int) -> List[ContactRecord]:
        """The live anchor record plus every live record linked to it."""
        return self._fetch("""
            SELECT * FROM Contact
            WHERE (id = ? OR linkedId = ?) AND deletedAt IS NULL
            ORDER BY createdAt ASC, id ASC
        """, (primary_id, primary_id))

    def create_contact(
        self,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        linked_id: Optional[int] = None,
        precedence: LinkPrecedence = LinkPrecedence.PRIMARY,
        created_at: Optional[datetime] = None,
        contact_id: Optional[int] = None,
    ) -> ContactRecord:
        """Insert a contact and return it as stored."""
        now = format_timestamp()
        created = format_timestamp(created_at) if created_at else now
        precedence = LinkPrecedence(precedence).value

        if contact_id is not None:
            self._execute("""
                INSERT INTO Contact (id, phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (contact_id, phone, email, linked_id, precedence, created, now))
            result_id = contact_id
        else:
            cursor = self._execute("""
                INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (phone, email, linked_id, precedence, created, now))
            result_id = cursor.lastrowid

        return self.get_contact(result_id)

    def update_contact(self, contact_id: int, **fields) -> None:
        """
        Update fields of a live contact and refresh its updatedAt.

        Raises:
            StaleRecordError: the contact no longer exists or was deleted
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        values = {
            key: value.value if isinstance(value, LinkPrecedence) else value
            for key, value in fields.items()
        }
        values["updatedAt"] = format_timestamp()

        assignments = ", ".join(f"{key} = ?" for key in values)
        cursor = self._execute(
            f"UPDATE Contact SET {assignments} WHERE id = ? AND deletedAt IS NULL",
            (*values.values(), contact_id),
        )
        if cursor.rowcount == 0:
            raise StaleRecordError(f"Contact {contact_id} is missing or deleted")

    def update_to_secondary(self, contact_id: int, primary_id: int) -> None:
        self.update_contact(
            contact_id,
            linkedId=primary_id,
            linkPrecedence=LinkPrecedence.SECONDARY,
        )


class ContactStore:
    """Owns the SQLite file and hands out transactional sessions."""

    def __init__(self, db_path: str, busy_timeout: float = 5.0):
        self.db_path = db_path
        self.busy_timeout = busy_timeout

    def init_db(self) -> None:
        init_db(self.db_path)

    @contextmanager
    def transaction(self) -> Iterator[ContactSession]:
        """Serialized transaction: commit on success, rollback on any error."""
        conn = get_db_connection(self.db_path, self.busy_timeout)
        try:
            with _translate_lock_errors():
                conn.execute("BEGIN IMMEDIATE")
            try:
                yield ContactSession(conn)
                with _translate_lock_errors():
                    conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def run_atomically(self, fn: Callable[[ContactSession], T]) -> T:
        with self.transaction() as session:
            return fn(session)
