"""A simple transaction that records row operations and applies them on commit."""

from __future__ import annotations

import enum
import itertools
import logging
import struct
import threading
from dataclasses import dataclass, field
from typing import Protocol

from obstore.sql_types import AttrType

logger = logging.getLogger(__name__)

DELETED_FLAG_BIT_MASK = 0x80000000
TRX_ID_BIT_MASK = 0x7FFFFFFF

_TRX_FIELD = struct.Struct("<I")


@dataclass(frozen=True, order=True)
class RID:
    """Location of a record: page number and slot within the page."""

    page_num: int
    slot_num: int


@dataclass(eq=False)
class Record:
    """A record's location and its raw bytes."""

    rid: RID
    data: bytearray

    def __post_init__(self) -> None:
        self.data = bytearray(self.data)


class OperationType(enum.Enum):
    """Kind of change a transaction made to a record."""

    INSERT = 0
    UPDATE = 1
    DELETE = 2
    UNDEFINED = 3


@dataclass(frozen=True)
class Operation:
    """A change to one record; operations on the same record compare equal."""

    type: OperationType = field(compare=False)
    rid: RID

    @property
    def page_num(self) -> int:
        return self.rid.page_num

    @property
    def slot_num(self) -> int:
        return self.rid.slot_num


class TrxTable(Protocol):
    """What a transaction needs from a table."""

    trx_field_offset: int

    def commit_insert(self, trx: Trx, rid: RID) -> None: ...

    def commit_delete(self, trx: Trx, rid: RID) -> None: ...

    def rollback_insert(self, trx: Trx, rid: RID) -> None: ...

    def rollback_delete(self, trx: Trx, rid: RID) -> None: ...


class TrxError(Exception):
    """A record operation conflicts with one the transaction already holds."""


class Trx:
    """Records inserts and deletes per table and commits or rolls them back.

    There is no control of concurrent access between transactions.
    """

    _ids = itertools.count(1)
    _ids_lock = threading.Lock()

    @staticmethod
    def default_trx_id() -> int:
        return 0

    @staticmethod
    def next_trx_id() -> int:
        with Trx._ids_lock:
            return next(Trx._ids)

    @staticmethod
    def trx_field_name() -> str:
        return "__trx"

    @staticmethod
    def trx_field_type() -> AttrType:
        return AttrType.INTS

    @staticmethod
    def trx_field_len() -> int:
        return _TRX_FIELD.size

    def __init__(self) -> None:
        self._trx_id = 0
        self._operations: dict[TrxTable, dict[RID, Operation]] = {}

    @property
    def trx_id(self) -> int:
        """The id of the running transaction, 0 when none has started."""
        return self._trx_id

    def __enter__(self) -> Trx:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.commit()
        else:
            self.rollback()

    def operations(self, table: TrxTable) -> list[Operation]:
        """Return the pending operations on a table."""
        return list(self._operations.get(table, {}).values())

    def insert_record(self, table: TrxTable, record: Record) -> None:
        """Register a newly inserted record."""
        if self._find_operation(table, record.rid) is not None:
            raise TrxError(f"record {record.rid} already has a pending operation")
        self._start_if_not_started()
        self._insert_operation(table, OperationType.INSERT, record.rid)

    def delete_record(self, table: TrxTable, record: Record) -> None:
        """Mark a record deleted by this transaction."""
        self._start_if_not_started()
        old = self._find_operation(table, record.rid)
        if old is not None:
            if old.type is OperationType.INSERT:
                self._delete_operation(table, record.rid)
                return
            raise TrxError(f"record {record.rid} already has a pending operation")
        self._set_record_trx_id(table, record, self._trx_id, True)
        self._insert_operation(table, OperationType.DELETE, record.rid)

    def commit(self) -> None:
        """Apply every pending operation; raise the last one's error if it failed."""
        self._finish(
            {
                OperationType.INSERT: lambda t, rid: t.commit_insert(self, rid),
                OperationType.DELETE: lambda t, rid: t.commit_delete(self, rid),
            },
            "commit",
        )

    def rollback(self) -> None:
        """Undo every pending operation; raise the last one's error if it failed."""
        self._finish(
            {
                OperationType.INSERT: lambda t, rid: t.rollback_insert(self, rid),
                OperationType.DELETE: lambda t, rid: t.rollback_delete(self, rid),
            },
            "rollback",
        )

    def commit_insert(self, table: TrxTable, record: Record) -> None:
        """Clear the transaction mark of an inserted record."""
        self._set_record_trx_id(table, record, 0, False)

    def rollback_delete(self, table: TrxTable, record: Record) -> None:
        """Clear the transaction mark and delete flag of a record."""
        self._set_record_trx_id(table, record, 0, False)

    def is_visible(self, table: TrxTable, record: Record) -> bool:
        """Tell whether this transaction sees the record."""
        record_trx_id, deleted = self._get_record_trx_id(table, record)
        if record_trx_id == 0 or record_trx_id == self._trx_id:
            return not deleted
        # Uncommitted data of another transaction: a delete mark means the
        # row still exists for everyone else.
        return deleted

    def init_trx_info(self, table: TrxTable, record: Record) -> None:
        """Stamp a new record with this transaction's id."""
        self._set_record_trx_id(table, record, self._trx_id, False)

    # ---- internals ---------------------------------------------------------

    def _finish(self, actions, what: str) -> None:
        error: Exception | None = None
        try:
            for table, table_operations in self._operations.items():
                for operation in table_operations.values():
                    action = actions.get(operation.type)
                    if action is None:
                        logger.critical("Unknown operation. type=%s", operation.type)
                        continue
                    try:
                        action(table, operation.rid)
                        error = None
                    except Exception as exc:  # noqa: BLE001 - keep going like the others
                        logger.error(
                            "Failed to %s %s operation. rid=%d.%d: %s",
                            what,
                            operation.type.name.lower(),
                            operation.page_num,
                            operation.slot_num,
                            exc,
                        )
                        error = exc
        finally:
            self._operations.clear()
            self._trx_id = 0
        if error is not None:
            raise error

    @staticmethod
    def _set_record_trx_id(
        table: TrxTable, record: Record, trx_id: int, deleted: bool
    ) -> None:
        value = trx_id & 0xFFFFFFFF
        if deleted:
            value |= DELETED_FLAG_BIT_MASK
        _TRX_FIELD.pack_into(record.data, table.trx_field_offset, value)

    @staticmethod
    def _get_record_trx_id(table: TrxTable, record: Record) -> tuple[int, bool]:
        (value,) = _TRX_FIELD.unpack_from(record.data, table.trx_field_offset)
        return value & TRX_ID_BIT_MASK, bool(value & DELETED_FLAG_BIT_MASK)

    def _find_operation(self, table: TrxTable, rid: RID) -> Operation | None:
        return self._operations.get(table, {}).get(rid)

    def _insert_operation(
        self, table: TrxTable, op_type: OperationType, rid: RID
    ) -> None:
        self._operations.setdefault(table, {}).setdefault(rid, Operation(op_type, rid))

    def _delete_operation(self, table: TrxTable, rid: RID) -> None:
        table_operations = self._operations.get(table)
        if table_operations is not None:
            table_operations.pop(rid, None)

    def _start_if_not_started(self) -> None:
        if self._trx_id == 0:
            self._trx_id = Trx.next_trx_id()