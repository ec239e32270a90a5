"""
Storage Backend Module

Record store used for loans, schedule versions, the repayment ledger, wallets,
the audit chain and the event outbox. Records are JSON documents keyed by
table and id; money is kept as Decimal strings.

``atomic()`` is a real commit boundary on both backends: a loan mutation and
everything it writes (audit entries, outbox events, fee debits) land together
or not at all.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Set, Tuple, Union
from decimal import Decimal
from datetime import datetime
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


Record = Dict[str, Any]


@dataclass
class StorageRecord:
    """Common identity and timestamps of persisted entities"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Record:
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Decimal):
                result[key] = str(value)
        return result


def _matches(record: Record, filters: Record) -> bool:
    return all(key in record and record[key] == value for key, value in filters.items())


def _copy(record: Record) -> Record:
    # Records handed out or taken in are detached from the stored document
    return json.loads(json.dumps(record, default=str))


class StorageInterface(ABC):
    """Abstract record store"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Record) -> None:
        """Insert or replace a record"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Record]:
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Record]:
        """Every record of a table in insertion order"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    def find(self, table: str, filters: Record) -> List[Record]:
        """Records whose fields equal every filter value, in insertion order"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    @contextmanager
    def atomic(self):
        """Run a block as one transaction; any exception rolls it back"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except BaseException:
            self.rollback()
            raise


class InMemoryStorage(StorageInterface):
    """
    Dictionary-backed store for tests and single-process deployments

    ``atomic()`` holds the store lock until the outermost block ends, so
    transactions are serialized and a rollback only ever restores records
    its own thread wrote. A nested ``atomic()`` acts as a savepoint inside
    the enclosing one.
    """

    def __init__(self):
        self._tables: Dict[str, Dict[str, Record]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    def _table(self, table: str) -> Dict[str, Record]:
        return self._tables.setdefault(table, {})

    def _journal(self) -> Tuple[List[int], List[Tuple[str, str, Optional[Record]]]]:
        if not hasattr(self._local, 'savepoints'):
            self._local.savepoints = []
            self._local.undo = []
        return self._local.savepoints, self._local.undo

    def _remember(self, table: str, record_id: str) -> None:
        savepoints, undo = self._journal()
        if savepoints:
            undo.append((table, record_id, self._table(table).get(record_id)))

    def save(self, table: str, record_id: str, data: Record) -> None:
        with self._lock:
            self._remember(table, record_id)
            self._table(table)[record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Record]:
        with self._lock:
            record = self._table(table).get(record_id)
            return _copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Record]:
        with self._lock:
            return [_copy(record) for record in self._table(table).values()]

    def find(self, table: str, filters: Record) -> List[Record]:
        with self._lock:
            return [_copy(r) for r in self._table(table).values() if _matches(r, filters)]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            if record_id not in self._table(table):
                return False
            self._remember(table, record_id)
            del self._table(table)[record_id]
            return True

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        savepoints, undo = self._journal()
        savepoints.append(len(undo))

    def commit(self) -> None:
        savepoints, undo = self._journal()
        if savepoints:
            savepoints.pop()
            if not savepoints:
                undo.clear()

    def rollback(self) -> None:
        """Restore every record touched since the innermost savepoint"""
        savepoints, undo = self._journal()
        if not savepoints:
            return
        mark = savepoints.pop()
        with self._lock:
            while len(undo) > mark:
                table, record_id, previous = undo.pop()
                if previous is None:
                    self._table(table).pop(record_id, None)
                else:
                    self._table(table)[record_id] = previous

    @contextmanager
    def atomic(self):
        with self._lock:
            self.begin_transaction()
            try:
                yield
                self.commit()
            except BaseException:
                self.rollback()
                raise

    def in_transaction(self) -> bool:
        return bool(self._journal()[0])


class SQLiteStorage(StorageInterface):
    """
    SQLite-backed store

    One table per record type holding the JSON document and an insertion
    position. The connection is shared across threads; ``atomic()`` holds the
    connection lock until the outermost block commits or rolls back.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # DEFERRED: writes open a transaction that only commit() ends
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._known_tables: Set[str] = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _table(self, table: str) -> str:
        if table not in self._known_tables:
            with self._lock:
                self._connection.execute(
                    f"CREATE TABLE IF NOT EXISTS {table} "
                    f"(id TEXT PRIMARY KEY, position INTEGER NOT NULL, data TEXT NOT NULL)"
                )
                self._connection.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{table}_position ON {table}(position)"
                )
                self._end_statement()
                self._known_tables.add(table)
        return table

    def _end_statement(self) -> None:
        if not self._depth:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Record) -> None:
        with self._lock:
            name = self._table(table)
            # Updates keep their original position
            self._connection.execute(
                f"INSERT INTO {name} (id, position, data) "
                f"VALUES (?, (SELECT COALESCE(MAX(position), 0) + 1 FROM {name}), ?) "
                f"ON CONFLICT(id) DO UPDATE SET data = excluded.data",
                (record_id, json.dumps(data, default=str))
            )
            self._end_statement()

    def load(self, table: str, record_id: str) -> Optional[Record]:
        with self._lock:
            row = self._connection.execute(
                f"SELECT data FROM {self._table(table)} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Record]:
        with self._lock:
            rows = self._connection.execute(
                f"SELECT data FROM {self._table(table)} ORDER BY position"
            ).fetchall()
            return [json.loads(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            cursor = self._connection.execute(
                f"DELETE FROM {self._table(table)} WHERE id = ?", (record_id,)
            )
            self._end_statement()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._connection.execute(
                f"SELECT 1 FROM {self._table(table)} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone() is not None

    def count(self, table: str) -> int:
        with self._lock:
            return self._connection.execute(
                f"SELECT COUNT(*) AS total FROM {self._table(table)}"
            ).fetchone()['total']

    @contextmanager
    def atomic(self):
        with self._lock:
            self.begin_transaction()
            try:
                yield
                self.commit()
            except BaseException:
                self.rollback()
                raise

    def begin_transaction(self) -> None:
        with self._lock:
            self._depth += 1

    def commit(self) -> None:
        """Commit once the outermost block completes"""
        with self._lock:
            if self._depth == 0:
                return
            self._depth -= 1
            if self._depth == 0:
                self._connection.commit()

    def rollback(self) -> None:
        """Abort the whole transaction, nested blocks included"""
        with self._lock:
            if self._depth:
                self._connection.rollback()
                self._depth = 0
                # Tables created inside the transaction were dropped with it
                self._known_tables.clear()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
