"""Pages, buffer frames and an LRU frame manager."""

from __future__ import annotations

import struct
import threading
import time
from dataclasses import dataclass, field

BP_INVALID_PAGE_NUM = -1
BP_PAGE_SIZE = 1 << 12
_PAGE_NUM = struct.Struct("<i")
BP_PAGE_DATA_SIZE = BP_PAGE_SIZE - _PAGE_NUM.size
BP_BUFFER_SIZE = 50
MAX_OPEN_FILE = 1024

_clock_lock = threading.Lock()
_last_time = 0


def current_time() -> int:
    """Return a strictly increasing monotonic timestamp in nanoseconds."""
    global _last_time
    with _clock_lock:
        now = max(time.monotonic_ns(), _last_time + 1)
        _last_time = now
        return now


@dataclass
class Page:
    """A fixed-size page: a page number followed by its data area."""

    page_num: int = BP_INVALID_PAGE_NUM
    data: bytearray = field(default_factory=lambda: bytearray(BP_PAGE_DATA_SIZE))

    def __post_init__(self) -> None:
        if len(self.data) != BP_PAGE_DATA_SIZE:
            raise ValueError(
                f"page data must be {BP_PAGE_DATA_SIZE} bytes, got {len(self.data)}"
            )
        self.data = bytearray(self.data)

    def to_bytes(self) -> bytes:
        return _PAGE_NUM.pack(self.page_num) + bytes(self.data)

    @classmethod
    def from_bytes(cls, raw: bytes) -> Page:
        if len(raw) != BP_PAGE_SIZE:
            raise ValueError(f"a page is {BP_PAGE_SIZE} bytes, got {len(raw)}")
        (page_num,) = _PAGE_NUM.unpack_from(raw)
        return cls(page_num, bytearray(raw[_PAGE_NUM.size:]))


@dataclass(eq=False)
class Frame:
    """A buffer slot holding one page of one file."""

    dirty: bool = False
    pin_count: int = 0
    acc_time: int = 0
    file_desc: int = 0
    page: Page = field(default_factory=Page)


class BPManager:
    """A fixed set of frames, replacing the least recently used when full."""

    def __init__(self, size: int = BP_BUFFER_SIZE) -> None:
        if size <= 0:
            raise ValueError("size must be positive")
        self.size = size
        self.frames = [Frame() for _ in range(size)]
        self.allocated = [False] * size
        self.allocated_size = 0

    def alloc(self) -> Frame:
        """Hand out a free frame, or reuse the least recently accessed one."""
        if self.allocated_size < self.size:
            for index, taken in enumerate(self.allocated):
                if not taken:
                    frame = self.frames[index]
                    frame.dirty = False
                    frame.file_desc = 0
                    frame.acc_time = current_time()
                    self.allocated[index] = True
                    self.allocated_size += 1
                    return frame
        victim = min(self.frames, key=lambda f: f.acc_time)
        victim.acc_time = current_time()
        return victim

    def get(self, file_desc: int, page_num: int) -> Frame | None:
        """Return the frame holding the given page, marking it accessed."""
        for frame, taken in zip(self.frames, self.allocated):
            if taken and frame.file_desc == file_desc and frame.page.page_num == page_num:
                frame.acc_time = current_time()
                return frame
        return None