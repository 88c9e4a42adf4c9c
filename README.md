# obstore

The storage core of a small teaching database engine, in plain Python with
no third-party dependencies.

## Modules

- `obstore.sql_types`: parsed SQL statement structures (`Selects`, `Inserts`,
  `Deletes`, `Updates`, `CreateTable`, `DropTable`, `CreateIndex`,
  `DropIndex`) with `Value`, `Condition`, `RelAttr`, `AttrInfo` and the enums
  `AttrType`, `CompOp` and `SqlFlag`. A `Value` checks that its data matches
  its type; statements with lists refuse more than 20 entries (`MAX_NUM`)
  with `ValueError`.
- `obstore.frames`: fixed-size `Page`s (4096 bytes, the first four holding the
  page number) with `to_bytes()` and `Page.from_bytes()`, buffer `Frame`s, and
  `BPManager`, which hands out free frames and, once all are taken, reuses the
  least recently accessed one. `current_time()` returns a strictly increasing
  monotonic timestamp in nanoseconds.
- `obstore.disk_buffer_pool`: `DiskBufferPool`, a paged-file manager. It
  creates and opens paged files, allocates, pins, unpins, disposes and forces
  pages, and keeps a bitmap of allocated pages in each file's header page
  (page 0). `global_disk_buffer_pool()` returns one shared pool.
- `obstore.trx`: `Trx`, a transaction that records insert and delete
  operations per table, commits or rolls them back, and decides whether a
  record is visible from the transaction id and deleted flag stored in it.

## Installing

    pip install .

To run the tests:

    pip install ".[test]"
    pytest

## Buffer pool example

```python
from obstore.disk_buffer_pool import DiskBufferPool

pool = DiskBufferPool(buffer_size=50)
pool.create_file("data.pages")
file_id = pool.open_file("data.pages")

handle = pool.allocate_page(file_id)
page_num = pool.get_page_num(handle)
data = pool.get_data(handle)
data[:5] = b"hello"
pool.mark_dirty(handle)
pool.unpin_page(handle)

pool.close_file(file_id)
```

`create_file` raises `FileExistsError` if the file exists. Other failures
raise subclasses of `BufferPoolError`: `IllegalFileIdError`,
`InvalidPageNumError`, `PagePinnedError`, `TooManyFilesError`,
`BufferPoolClosedError` (using a handle after `unpin_page`) and
`BufferFullError` (every frame pinned). `force_page(file_id)` with no page
number writes back and releases every unpinned buffered page of the file.

## Transaction example

A transaction works with any table object that has a `trx_field_offset`
attribute (where the 4-byte transaction field sits in a record) and the
methods `commit_insert`, `commit_delete`, `rollback_insert` and
`rollback_delete`, each taking the transaction and a `RID` (see `TrxTable`).

```python
from obstore.trx import RID, Record, Trx

class Table:
    trx_field_offset = 0
    def commit_insert(self, trx, rid): ...
    def commit_delete(self, trx, rid): ...
    def rollback_insert(self, trx, rid): ...
    def rollback_delete(self, trx, rid): ...

table = Table()
record = Record(RID(1, 0), bytearray(8))

with Trx() as trx:
    trx.delete_record(table, record)
    assert not trx.is_visible(table, record)
```

Leaving the `with` block commits, or rolls back if an exception was raised.
A second operation on a record that already has one pending raises
`TrxError`, except that deleting a record inserted in the same transaction
simply drops the insert.

## What this package does not do

There is no SQL parser, no record or table manager, no index, no query
execution and no server or command-line client. The statement structures
are plain data; the buffer pool stores raw pages, and transactions rely on a
table object supplied by the caller.