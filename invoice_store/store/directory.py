"""
Client directory backed by the shared SQLite database.

Clients are keyed by a human-chosen nickname that can later be changed.
Because the nickname is the primary key, a rename is a delete of the old
row plus an insert of the new one inside one immediate transaction: no
reader ever sees the client under zero or two nicknames.

Invariants:
    - The PRIMARY KEY on nickname is the only duplicate guard; there is no
      check-then-insert window
    - Every write runs in an immediate transaction, so writers wait for the
      lock instead of failing, and concurrent updates are last-writer-wins
      with every field coming from the same writer
    - Cursors are keyset cursors, never offsets

How to change safely:
    - Keep the activity cursor format "<yyyyMMdd>|<nickname>" stable
    - The activity join matches client name to invoice buyer name; if two
      clients share a display name they share activity too
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date, datetime
from typing import Any

from ..errors import AlreadyExistsError, InvalidArgumentError, NotFoundError
from ..models import BillingAddress, Client, ClientUpdate, Page
from .database import Database

logger = logging.getLogger(__name__)

_ADDRESS_COLUMNS = (
    "name",
    "representative_name",
    "company_identifier",
    "vat_identifier",
    "address",
    "city",
    "postal_code",
    "country",
)

_CURSOR_DATE_FORMAT = "%Y%m%d"

# Most recent invoice date per client, matched on case-insensitive name.
_ACTIVITY_CTE = """
    WITH activity AS (
        SELECT c.*,
               (SELECT MAX(i.date) FROM invoices i
                WHERE casefold(i.buyer_name) = casefold(c.name)) AS last_date
        FROM clients c
    )
"""


def _row_to_client(row: sqlite3.Row) -> Client:
    return Client(
        nickname=row["nickname"],
        address=BillingAddress(**{c: row[c] for c in _ADDRESS_COLUMNS}),
    )


def _address_values(address: BillingAddress) -> list[Any]:
    return [getattr(address, c) for c in _ADDRESS_COLUMNS]


def encode_activity_cursor(last_date: date | None, nickname: str) -> str:
    """Encode the activity sort key as "<yyyyMMdd>|<nickname>".

    Clients without invoices get an empty date part.
    """
    date_part = last_date.strftime(_CURSOR_DATE_FORMAT) if last_date else ""
    return f"{date_part}|{nickname}"


def decode_activity_cursor(cursor: str) -> tuple[date | None, str]:
    """Split an activity cursor back into (last_date, nickname).

    Raises:
        InvalidArgumentError: If the cursor is malformed
    """
    date_part, sep, nickname = cursor.partition("|")
    if not sep:
        raise InvalidArgumentError(f"Malformed cursor: {cursor!r}", argument="cursor")
    if not date_part:
        return None, nickname
    try:
        return datetime.strptime(date_part, _CURSOR_DATE_FORMAT).date(), nickname
    except ValueError as e:
        raise InvalidArgumentError(f"Malformed cursor: {cursor!r}", argument="cursor") from e


class ClientDirectory:
    """Client records keyed by nickname.

    Example:
        >>> directory = ClientDirectory(db)
        >>> await directory.add(Client("acme", address))
        >>> await directory.update("acme", ClientUpdate(nickname="acme-ltd"))
        >>> (await directory.get("acme-ltd")).address == address
        True
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def _not_found(self, nickname: str) -> NotFoundError:
        return NotFoundError(
            f"Client with nickname '{nickname}' not found.", kind="client", key=nickname
        )

    def _already_exists(self, nickname: str) -> AlreadyExistsError:
        return AlreadyExistsError(
            f"Client with nickname '{nickname}' already exists.", kind="client", key=nickname
        )

    def _insert(self, conn: sqlite3.Connection, nickname: str, address: BillingAddress) -> None:
        columns = ("nickname", *_ADDRESS_COLUMNS)
        placeholders = ", ".join("?" for _ in columns)
        try:
            conn.execute(
                f"INSERT INTO clients ({', '.join(columns)}) VALUES ({placeholders})",
                [nickname, *_address_values(address)],
            )
        except sqlite3.IntegrityError as e:
            raise self._already_exists(nickname) from e

    async def add(self, client: Client) -> None:
        """Add a new client.

        Raises:
            AlreadyExistsError: If the nickname is taken
        """
        await self.db.execute_immediate(
            lambda conn: self._insert(conn, client.nickname, client.address)
        )
        logger.info("Added client", extra={"nickname": client.nickname})

    async def get(self, nickname: str) -> Client:
        """Get a client by nickname.

        Raises:
            NotFoundError: If no client has this nickname
        """

        def work(conn: sqlite3.Connection) -> Client:
            row = conn.execute(
                "SELECT * FROM clients WHERE nickname = ?", (nickname,)
            ).fetchone()
            if row is None:
                raise self._not_found(nickname)
            return _row_to_client(row)

        return await self.db.execute(work)

    async def find_by_company_identifier(self, company_identifier: str) -> Client | None:
        """Return the first client (by nickname) with this company identifier, if any."""

        def work(conn: sqlite3.Connection) -> Client | None:
            row = conn.execute(
                """
                SELECT * FROM clients WHERE company_identifier = ?
                ORDER BY nickname LIMIT 1
                """,
                (company_identifier,),
            ).fetchone()
            return _row_to_client(row) if row else None

        return await self.db.execute(work)

    async def update(self, nickname: str, update: ClientUpdate) -> None:
        """Change a client's address and/or nickname.

        Args:
            nickname: Current nickname
            update: Fields to change; None keeps the stored value

        Raises:
            NotFoundError: If no client has this nickname
            AlreadyExistsError: If renaming onto another client's nickname
        """

        def work(conn: sqlite3.Connection) -> str:
            row = conn.execute(
                "SELECT * FROM clients WHERE nickname = ?", (nickname,)
            ).fetchone()
            if row is None:
                raise self._not_found(nickname)

            current = _row_to_client(row)
            new_nickname = update.nickname if update.nickname is not None else nickname
            new_address = update.address if update.address is not None else current.address

            if new_nickname != nickname:
                conn.execute("DELETE FROM clients WHERE nickname = ?", (nickname,))
                self._insert(conn, new_nickname, new_address)
            else:
                assignments = ", ".join(f"{c} = ?" for c in _ADDRESS_COLUMNS)
                conn.execute(
                    f"UPDATE clients SET {assignments} WHERE nickname = ?",
                    [*_address_values(new_address), nickname],
                )
            return new_nickname

        new_nickname = await self.db.execute_immediate(work)
        if new_nickname != nickname:
            logger.info("Renamed client", extra={"nickname": nickname, "new_nickname": new_nickname})
        else:
            logger.info("Updated client", extra={"nickname": nickname})

    async def delete(self, nickname: str) -> None:
        """Delete a client.

        Raises:
            NotFoundError: If no client has this nickname
        """

        def work(conn: sqlite3.Connection) -> None:
            cursor = conn.execute("DELETE FROM clients WHERE nickname = ?", (nickname,))
            if cursor.rowcount == 0:
                raise self._not_found(nickname)

        await self.db.execute_immediate(work)
        logger.info("Deleted client", extra={"nickname": nickname})

    async def list(self, limit: int, cursor: str | None = None) -> Page:
        """List clients by nickname ascending.

        Args:
            limit: Maximum clients to return
            cursor: next_cursor of the previous page (last nickname seen)

        Returns:
            Page of clients; next_cursor is None on the last page
        """
        if limit < 1:
            raise InvalidArgumentError("limit must be >= 1", argument="limit")

        def work(conn: sqlite3.Connection) -> Page:
            query = "SELECT * FROM clients"
            params: list[Any] = []
            if cursor:
                query += " WHERE nickname > ?"
                params.append(cursor)
            query += " ORDER BY nickname ASC LIMIT ?"
            params.append(limit + 1)

            rows = conn.execute(query, params).fetchall()
            items = [_row_to_client(row) for row in rows[:limit]]
            next_cursor = items[-1].nickname if len(rows) > limit else None
            return Page(items, next_cursor)

        return await self.db.execute(work)

    async def latest(self, limit: int, cursor: str | None = None) -> Page:
        """List clients by their most recent invoice date, newest first.

        Clients are matched to invoices by case-insensitive equality of
        the client's billing name and the invoice buyer name. Clients
        without invoices come last, ordered by nickname.

        Args:
            limit: Maximum clients to return
            cursor: next_cursor of the previous page ("<yyyyMMdd>|<nickname>")

        Returns:
            Page of clients; next_cursor is None on the last page
        """
        if limit < 1:
            raise InvalidArgumentError("limit must be >= 1", argument="limit")

        query = _ACTIVITY_CTE + "SELECT * FROM activity"
        params: list[Any] = []
        if cursor:
            cursor_date, cursor_nickname = decode_activity_cursor(cursor)
            if cursor_date is None:
                query += " WHERE last_date IS NULL AND nickname > ?"
                params.append(cursor_nickname)
            else:
                iso = cursor_date.isoformat()
                query += """
                    WHERE last_date < ?
                       OR (last_date = ? AND nickname > ?)
                       OR last_date IS NULL
                """
                params.extend([iso, iso, cursor_nickname])
        query += " ORDER BY last_date IS NULL, last_date DESC, nickname ASC LIMIT ?"
        params.append(limit + 1)

        def work(conn: sqlite3.Connection) -> Page:
            rows = conn.execute(query, params).fetchall()
            page_rows = rows[:limit]
            items = [_row_to_client(row) for row in page_rows]
            next_cursor = None
            if len(rows) > limit:
                last = page_rows[-1]
                last_date = date.fromisoformat(last["last_date"]) if last["last_date"] else None
                next_cursor = encode_activity_cursor(last_date, last["nickname"])
            return Page(items, next_cursor)

        return await self.db.execute(work)
