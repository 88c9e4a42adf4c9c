"""Storage core of a small database: statement structures, page frames, a paged disk buffer pool and simple transactions."""

__version__ = "0.1.0"
__all__ = ["sql_types", "frames", "disk_buffer_pool", "trx"]