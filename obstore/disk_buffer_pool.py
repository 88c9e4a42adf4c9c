"""A paged file manager with a shared, LRU-replaced buffer of frames."""

from __future__ import annotations

import functools
import logging
import os
import struct
from dataclasses import dataclass

from obstore.frames import (
    BP_BUFFER_SIZE,
    BP_INVALID_PAGE_NUM,
    BP_PAGE_DATA_SIZE,
    BP_PAGE_SIZE,
    MAX_OPEN_FILE,
    BPManager,
    Frame,
    Page,
    current_time,
)

logger = logging.getLogger(__name__)

_INT = struct.Struct("<i")


class BufferPoolError(Exception):
    """Base class of buffer pool failures."""


class IllegalFileIdError(BufferPoolError):
    """The file id is out of range or does not name an open file."""


class InvalidPageNumError(BufferPoolError):
    """The page number is beyond the file or names a free page."""


class PagePinnedError(BufferPoolError):
    """The page is pinned and cannot be released."""


class TooManyFilesError(BufferPoolError):
    """No slot is left for another open file."""


class BufferPoolClosedError(BufferPoolError):
    """The page handle has already been unpinned."""


class BufferFullError(BufferPoolError):
    """Every frame of the buffer is pinned."""


class FileSubHeader:
    """Page count and allocated page count kept at the start of the header page."""

    SIZE = 2 * _INT.size

    def __init__(self, data: bytearray) -> None:
        self._data = data

    @property
    def page_count(self) -> int:
        return _INT.unpack_from(self._data, 0)[0]

    @page_count.setter
    def page_count(self, value: int) -> None:
        _INT.pack_into(self._data, 0, value)

    @property
    def allocated_pages(self) -> int:
        return _INT.unpack_from(self._data, _INT.size)[0]

    @allocated_pages.setter
    def allocated_pages(self, value: int) -> None:
        _INT.pack_into(self._data, _INT.size, value)


_BITMAP_OFFSET = FileSubHeader.SIZE
MAX_PAGES_PER_FILE = (BP_PAGE_DATA_SIZE - _BITMAP_OFFSET) * 8


@dataclass(eq=False)
class PageHandle:
    """A pinned page in the buffer."""

    frame: Frame
    open: bool = True


@dataclass(eq=False)
class FileHandle:
    """An open paged file and its pinned header frame."""

    file_name: str
    file_desc: int
    hdr_frame: Frame

    @property
    def hdr_page(self) -> Page:
        return self.hdr_frame.page

    @property
    def sub_header(self) -> FileSubHeader:
        return FileSubHeader(self.hdr_frame.page.data)

    def is_page_allocated(self, page_num: int) -> bool:
        byte = self.hdr_page.data[_BITMAP_OFFSET + page_num // 8]
        return bool(byte & (1 << (page_num % 8)))

    def mark_page(self, page_num: int, used: bool) -> None:
        index = _BITMAP_OFFSET + page_num // 8
        mask = 1 << (page_num % 8)
        if used:
            self.hdr_page.data[index] |= mask
        else:
            self.hdr_page.data[index] &= ~mask & 0xFF


class DiskBufferPool:
    """Opens paged files and caches their pages in a fixed number of frames."""

    def __init__(self, buffer_size: int = BP_BUFFER_SIZE) -> None:
        self._manager = BPManager(buffer_size)
        self._open_list: list[FileHandle | None] = [None] * MAX_OPEN_FILE

    # ---- files -------------------------------------------------------------

    def create_file(self, file_name: str | os.PathLike) -> None:
        """Create a paged file holding only its header page.

        Raises FileExistsError if the file already exists.
        """
        header = Page(page_num=0)
        sub_header = FileSubHeader(header.data)
        sub_header.allocated_pages = 1
        sub_header.page_count = 1
        header.data[_BITMAP_OFFSET] |= 0x01

        fd = os.open(file_name, os.O_RDWR | os.O_CREAT | os.O_EXCL, 0o600)
        try:
            os.lseek(fd, 0, os.SEEK_SET)
            raw = header.to_bytes()
            if os.write(fd, raw) != len(raw):
                raise OSError(f"short write of header to {os.fspath(file_name)}")
        finally:
            os.close(fd)
        logger.info("Successfully create %s.", os.fspath(file_name))

    def open_file(self, file_name: str | os.PathLike) -> int:
        """Open a paged file and return its file id; an open file keeps its id."""
        name = os.fspath(file_name)
        for file_id, handle in enumerate(self._open_list):
            if handle is not None and handle.file_name == name:
                logger.info("%s has already been opened.", name)
                return file_id

        try:
            slot = self._open_list.index(None)
        except ValueError:
            raise TooManyFilesError(
                f"cannot open {name}: too many files are open"
            ) from None

        fd = os.open(name, os.O_RDWR)
        try:
            frame = self._allocate_block()
        except BaseException:
            os.close(fd)
            raise
        frame.dirty = False
        frame.acc_time = current_time()
        frame.file_desc = fd
        frame.pin_count = 1
        try:
            self._load_page(0, fd, frame)
        except BaseException:
            frame.pin_count = 0
            self._dispose_block(frame)
            os.close(fd)
            raise

        self._open_list[slot] = FileHandle(name, fd, frame)
        logger.info("Successfully open %s. file_id=%d", name, slot)
        return slot

    def close_file(self, file_id: int) -> None:
        """Flush every buffered page of the file and close it."""
        handle = self._file_handle(file_id)
        handle.hdr_frame.pin_count -= 1
        try:
            self._force_all_pages(handle)
        except BaseException:
            handle.hdr_frame.pin_count += 1
            raise
        os.close(handle.file_desc)
        self._open_list[file_id] = None
        logger.info("Successfully close file %d:%s.", file_id, handle.file_name)

    # ---- pages -------------------------------------------------------------

    def get_this_page(self, file_id: int, page_num: int) -> PageHandle:
        """Pin the given page in the buffer, reading it from disk if needed."""
        handle = self._file_handle(file_id)
        self._check_page_num(page_num, handle)

        for frame in self._frames_of(handle):
            if frame.page.page_num == page_num:
                frame.pin_count += 1
                frame.acc_time = current_time()
                return PageHandle(frame)

        frame = self._allocate_block()
        frame.dirty = False
        frame.file_desc = handle.file_desc
        frame.pin_count = 1
        frame.acc_time = current_time()
        try:
            self._load_page(page_num, handle.file_desc, frame)
        except BaseException:
            frame.pin_count = 0
            self._dispose_block(frame)
            raise
        return PageHandle(frame)

    def allocate_page(self, file_id: int) -> PageHandle:
        """Pin a free page of the file, extending the file if none is free."""
        handle = self._file_handle(file_id)
        sub_header = handle.sub_header

        if sub_header.allocated_pages < sub_header.page_count:
            for page_num in range(sub_header.page_count):
                if not handle.is_page_allocated(page_num):
                    sub_header.allocated_pages += 1
                    handle.mark_page(page_num, True)
                    handle.hdr_frame.dirty = True
                    return self.get_this_page(file_id, page_num)

        if sub_header.page_count >= MAX_PAGES_PER_FILE:
            raise BufferPoolError(
                f"{handle.file_name} already holds {MAX_PAGES_PER_FILE} pages"
            )

        frame = self._allocate_block()

        page_num = sub_header.page_count
        sub_header.allocated_pages += 1
        sub_header.page_count += 1
        handle.mark_page(page_num, True)
        handle.hdr_frame.dirty = True

        frame.dirty = False
        frame.file_desc = handle.file_desc
        frame.pin_count = 1
        frame.acc_time = current_time()
        frame.page.page_num = page_num
        frame.page.data[:] = bytes(BP_PAGE_DATA_SIZE)

        # Writing the fresh page extends the file.
        self._flush_block(frame)
        return PageHandle(frame)

    def get_page_num(self, page_handle: PageHandle) -> int:
        """Return the page number of a pinned page."""
        if not page_handle.open:
            raise BufferPoolClosedError("page handle is closed")
        return page_handle.frame.page.page_num

    def get_data(self, page_handle: PageHandle) -> bytearray:
        """Return the mutable data area of a pinned page."""
        if not page_handle.open:
            raise BufferPoolClosedError("page handle is closed")
        return page_handle.frame.page.data

    def mark_dirty(self, page_handle: PageHandle) -> None:
        """Record that the page was changed and must be written back."""
        page_handle.frame.dirty = True

    def unpin_page(self, page_handle: PageHandle) -> None:
        """Release the pin, letting the page be replaced later."""
        page_handle.open = False
        page_handle.frame.pin_count -= 1

    def dispose_page(self, file_id: int, page_num: int) -> None:
        """Drop a page from the buffer and mark it free in the file."""
        handle = self._file_handle(file_id)
        self._check_page_num(page_num, handle)

        for index, frame in enumerate(self._manager.frames):
            if not self._manager.allocated[index]:
                continue
            if frame.file_desc != handle.file_desc:
                continue
            if frame.page.page_num == page_num:
                if frame.pin_count != 0:
                    raise PagePinnedError(
                        f"page {page_num} of {handle.file_name} is pinned"
                    )
                self._manager.allocated[index] = False

        handle.hdr_frame.dirty = True
        handle.sub_header.allocated_pages -= 1
        handle.mark_page(page_num, False)

    def force_page(self, file_id: int, page_num: int = BP_INVALID_PAGE_NUM) -> None:
        """Write back and release a buffered page, or every page of the file for -1."""
        handle = self._file_handle(file_id)
        for index, frame in enumerate(self._manager.frames):
            if not self._manager.allocated[index]:
                continue
            if frame.file_desc != handle.file_desc:
                continue
            if page_num != BP_INVALID_PAGE_NUM and frame.page.page_num != page_num:
                continue
            if frame.pin_count != 0:
                raise PagePinnedError(
                    f"page {frame.page.page_num} of {handle.file_name} is pinned"
                )
            if frame.dirty:
                self._flush_block(frame)
            self._manager.allocated[index] = False
            if page_num != BP_INVALID_PAGE_NUM:
                return

    def get_page_count(self, file_id: int) -> int:
        """Return the number of pages in the file, free ones included."""
        return self._file_handle(file_id).sub_header.page_count

    def flush_all_pages(self, file_id: int) -> None:
        """Write back and release every buffered page of the file."""
        self._force_all_pages(self._file_handle(file_id))

    # ---- internals ---------------------------------------------------------

    def _file_handle(self, file_id: int) -> FileHandle:
        if not 0 <= file_id < MAX_OPEN_FILE:
            raise IllegalFileIdError(f"invalid file id {file_id}")
        handle = self._open_list[file_id]
        if handle is None:
            raise IllegalFileIdError(f"file id {file_id} is not open")
        return handle

    def _frames_of(self, handle: FileHandle):
        for frame, taken in zip(self._manager.frames, self._manager.allocated):
            if taken and frame.file_desc == handle.file_desc:
                yield frame

    @staticmethod
    def _check_page_num(page_num: int, handle: FileHandle) -> None:
        if not 0 <= page_num < handle.sub_header.page_count:
            raise InvalidPageNumError(
                f"invalid page number {page_num} of {handle.file_name}"
            )
        if not handle.is_page_allocated(page_num):
            raise InvalidPageNumError(
                f"page {page_num} of {handle.file_name} is not allocated"
            )

    def _force_all_pages(self, handle: FileHandle) -> None:
        for index, frame in enumerate(self._manager.frames):
            if not self._manager.allocated[index]:
                continue
            if frame.file_desc != handle.file_desc:
                continue
            if frame.dirty:
                self._flush_block(frame)
            self._manager.allocated[index] = False

    @staticmethod
    def _flush_block(frame: Frame) -> None:
        raw = frame.page.to_bytes()
        os.lseek(frame.file_desc, frame.page.page_num * BP_PAGE_SIZE, os.SEEK_SET)
        if os.write(frame.file_desc, raw) != len(raw):
            raise OSError(f"short write of page {frame.page.page_num}")
        frame.dirty = False
        logger.debug(
            "Flush block. file desc=%d, page num=%d",
            frame.file_desc,
            frame.page.page_num,
        )

    @staticmethod
    def _load_page(page_num: int, file_desc: int, frame: Frame) -> None:
        os.lseek(file_desc, page_num * BP_PAGE_SIZE, os.SEEK_SET)
        raw = os.read(file_desc, BP_PAGE_SIZE)
        if len(raw) != BP_PAGE_SIZE:
            raise OSError(f"short read of page {page_num}")
        page = Page.from_bytes(raw)
        frame.page.page_num = page.page_num
        frame.page.data[:] = page.data

    def _allocate_block(self) -> Frame:
        manager = self._manager
        for index, taken in enumerate(manager.allocated):
            if not taken:
                manager.allocated[index] = True
                return manager.frames[index]

        unpinned = [frame for frame in manager.frames if frame.pin_count == 0]
        if not unpinned:
            raise BufferFullError("all frames are in use and pinned")
        victim = min(unpinned, key=lambda frame: frame.acc_time)
        if victim.dirty:
            self._flush_block(victim)
        return victim

    def _dispose_block(self, frame: Frame) -> None:
        if frame.pin_count != 0:
            raise PagePinnedError(
                f"cannot free page {frame.page.page_num}: it is pinned"
            )
        if frame.dirty:
            self._flush_block(frame)
        frame.dirty = False
        index = next(i for i, f in enumerate(self._manager.frames) if f is frame)
        self._manager.allocated[index] = False


@functools.lru_cache(maxsize=None)
def global_disk_buffer_pool() -> DiskBufferPool:
    """Return the process-wide buffer pool."""
    return DiskBufferPool()