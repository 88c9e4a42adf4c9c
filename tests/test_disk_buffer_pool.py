import struct

import pytest

from obstore.disk_buffer_pool import (
    BufferFullError,
    BufferPoolClosedError,
    DiskBufferPool,
    IllegalFileIdError,
    InvalidPageNumError,
    PagePinnedError,
    global_disk_buffer_pool,
)
from obstore.frames import BP_PAGE_DATA_SIZE, BP_PAGE_SIZE, MAX_OPEN_FILE


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "table.data")
    DiskBufferPool().create_file(path)
    return path


def test_create_file_writes_header_page(db_path):
    with open(db_path, "rb") as f:
        raw = f.read()
    assert len(raw) == BP_PAGE_SIZE
    assert struct.unpack_from("<iii", raw) == (0, 1, 1)
    assert raw[12] == 0x01


def test_create_existing_file_fails(db_path):
    with pytest.raises(FileExistsError):
        DiskBufferPool().create_file(db_path)


def test_open_file_reports_one_page(db_path):
    pool = DiskBufferPool()
    file_id = pool.open_file(db_path)
    assert pool.get_page_count(file_id) == 1
    assert pool.open_file(db_path) == file_id
    pool.close_file(file_id)


def test_allocate_page_extends_file(db_path):
    pool = DiskBufferPool()
    file_id = pool.open_file(db_path)
    handle = pool.allocate_page(file_id)
    assert pool.get_page_num(handle) == 1
    assert pool.get_page_count(file_id) == 2
    assert len(pool.get_data(handle)) == BP_PAGE_DATA_SIZE
    pool.unpin_page(handle)
    pool.close_file(file_id)
    with open(db_path, "rb") as f:
        raw = f.read()
    assert len(raw) == 2 * BP_PAGE_SIZE
    assert struct.unpack_from("<iii", raw) == (0, 2, 2)


def test_data_survives_close_and_reopen(db_path):
    pool = DiskBufferPool()
    file_id = pool.open_file(db_path)
    contents = {}
    for payload in (b"first", b"second"):
        handle = pool.allocate_page(file_id)
        pool.get_data(handle)[: len(payload)] = payload
        pool.mark_dirty(handle)
        contents[pool.get_page_num(handle)] = payload
        pool.unpin_page(handle)
    pool.close_file(file_id)

    other = DiskBufferPool()
    file_id = other.open_file(db_path)
    assert other.get_page_count(file_id) == 3
    for page_num, payload in contents.items():
        handle = other.get_this_page(file_id, page_num)
        assert bytes(other.get_data(handle)[: len(payload)]) == payload
        other.unpin_page(handle)
    other.close_file(file_id)


def test_get_this_page_returns_same_frame_when_buffered(db_path):
    pool = DiskBufferPool()
    file_id = pool.open_file(db_path)
    first = pool.allocate_page(file_id)
    second = pool.get_this_page(file_id, 1)
    assert second.frame is first.frame
    assert first.frame.pin_count == 2
    pool.unpin_page(first)
    pool.unpin_page(second)
    pool.close_file(file_id)


def test_invalid_page_numbers(db_path):
    pool = DiskBufferPool()
    file_id = pool.open_file(db_path)
    with pytest.raises(InvalidPageNumError):
        pool.get_this_page(file_id, 1)
    with pytest.raises(InvalidPageNumError):
        pool.get_this_page(file_id, -1)
    pool.close_file(file_id)


@pytest.mark.parametrize("file_id", [-1, 5, MAX_OPEN_FILE])
def test_illegal_file_ids(file_id):
    pool = DiskBufferPool()
    with pytest.raises(IllegalFileIdError):
        pool.get_page_count(file_id)
    with pytest.raises(IllegalFileIdError):
        pool.close_file(file_id)


def test_closed_file_id_is_illegal(db_path):
    pool = DiskBufferPool()
    file_id = pool.open_file(db_path)
    pool.close_file(file_id)
    with pytest.raises(IllegalFileIdError):
        pool.allocate_page(file_id)


def test_unpinned_handle_is_closed(db_path):
    pool = DiskBufferPool()
    file_id = pool.open_file(db_path)
    handle = pool.allocate_page(file_id)
    pool.unpin_page(handle)
    with pytest.raises(BufferPoolClosedError):
        pool.get_page_num(handle)
    with pytest.raises(BufferPoolClosedError):
        pool.get_data(handle)
    pool.close_file(file_id)


def test_dispose_pinned_page_fails(db_path):
    pool = DiskBufferPool()
    file_id = pool.open_file(db_path)
    handle = pool.allocate_page(file_id)
    with pytest.raises(PagePinnedError):
        pool.dispose_page(file_id, 1)
    pool.unpin_page(handle)
    pool.close_file(file_id)


def test_disposed_page_is_reused(db_path):
    pool = DiskBufferPool()
    file_id = pool.open_file(db_path)
    handle = pool.allocate_page(file_id)
    pool.unpin_page(handle)
    pool.dispose_page(file_id, 1)
    with pytest.raises(InvalidPageNumError):
        pool.get_this_page(file_id, 1)

    reused = pool.allocate_page(file_id)
    assert pool.get_page_num(reused) == 1
    assert pool.get_page_count(file_id) == 2
    pool.unpin_page(reused)
    pool.close_file(file_id)


def test_lru_eviction_writes_back_dirty_page(db_path):
    pool = DiskBufferPool(buffer_size=2)
    file_id = pool.open_file(db_path)
    first = pool.allocate_page(file_id)
    pool.get_data(first)[:5] = b"hello"
    pool.mark_dirty(first)
    pool.unpin_page(first)

    second = pool.allocate_page(file_id)
    assert pool.get_page_num(second) == 2
    assert second.frame is first.frame
    pool.unpin_page(second)

    again = pool.get_this_page(file_id, 1)
    assert bytes(pool.get_data(again)[:5]) == b"hello"
    pool.unpin_page(again)
    pool.close_file(file_id)


def test_buffer_full_when_every_frame_pinned(db_path):
    pool = DiskBufferPool(buffer_size=2)
    file_id = pool.open_file(db_path)
    handle = pool.allocate_page(file_id)
    with pytest.raises(BufferFullError):
        pool.allocate_page(file_id)
    assert pool.get_page_count(file_id) == 2
    pool.unpin_page(handle)
    pool.close_file(file_id)


def test_force_page_writes_to_disk(db_path):
    pool = DiskBufferPool()
    file_id = pool.open_file(db_path)
    handle = pool.allocate_page(file_id)
    pool.get_data(handle)[:4] = b"data"
    pool.mark_dirty(handle)
    pool.unpin_page(handle)
    pool.force_page(file_id, 1)
    with open(db_path, "rb") as f:
        raw = f.read()
    assert raw[BP_PAGE_SIZE + 4 : BP_PAGE_SIZE + 8] == b"data"
    assert struct.unpack_from("<i", raw, BP_PAGE_SIZE)[0] == 1
    pool.close_file(file_id)


def test_force_pinned_page_fails(db_path):
    pool = DiskBufferPool()
    file_id = pool.open_file(db_path)
    handle = pool.allocate_page(file_id)
    with pytest.raises(PagePinnedError):
        pool.force_page(file_id, 1)
    pool.unpin_page(handle)
    pool.close_file(file_id)


def test_flush_all_pages_persists_changes(db_path):
    pool = DiskBufferPool()
    file_id = pool.open_file(db_path)
    handle = pool.allocate_page(file_id)
    pool.get_data(handle)[:3] = b"abc"
    pool.mark_dirty(handle)
    pool.unpin_page(handle)
    pool.flush_all_pages(file_id)
    with open(db_path, "rb") as f:
        raw = f.read()
    assert raw[BP_PAGE_SIZE + 4 : BP_PAGE_SIZE + 7] == b"abc"
    assert struct.unpack_from("<ii", raw, 4) == (2, 2)
    pool.close_file(file_id)


def test_global_pool_is_shared(db_path):
    file_id = global_disk_buffer_pool().open_file(db_path)
    assert global_disk_buffer_pool().get_page_count(file_id) == 1
    assert global_disk_buffer_pool().open_file(db_path) == file_id
    global_disk_buffer_pool().close_file(file_id)
    with pytest.raises(IllegalFileIdError):
        global_disk_buffer_pool().get_page_count(file_id)