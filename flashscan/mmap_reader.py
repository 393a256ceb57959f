"""
Read-only Image Reader — mmap + sector alignment + strict range reads.

APPROACH
────────
1. Memory-mapped I/O (mmap, ACCESS_READ) — the OS handles paging and the
   mapping cannot be written through.
2. Fallback to seek() + read() when mmap fails (huge images on 32-bit,
   character devices, empty files).
3. Every read inside the image is exact: a short read is an ImageIOError,
   never a silently truncated buffer.
4. Backward block iteration is lazy — callers stop consuming as soon as
   they find what they are looking for.

The source is opened "rb" and never written.
"""

import os
import mmap
import logging
from typing import Iterator, Optional, BinaryIO

from .errors import ConfigurationError, ImageIOError

logger = logging.getLogger(__name__)

# Sector size (refinement unit, independent of block size)
SECTOR_SIZE = 512


def align_down(offset: int, alignment: int = SECTOR_SIZE) -> int:
    """Round offset DOWN to the nearest sector boundary."""
    return (offset // alignment) * alignment


def align_up(offset: int, alignment: int = SECTOR_SIZE) -> int:
    """Round offset UP to the nearest sector boundary."""
    return ((offset + alignment - 1) // alignment) * alignment


def ceil_div(a: int, b: int) -> int:
    return -(-a // b)


class DiskReader:
    """
    Read-only range reader over an image file or block device.

    Usage:
        with DiskReader.open("image.dd") as reader:
            data = reader.read_at(offset, size)
            for index, block in reader.iter_blocks_backward(block_size):
                ...

    `reads` counts read calls so scan strategies can be compared.
    """

    def __init__(
        self,
        fd: BinaryIO,
        total_size: int,
        use_mmap: bool = True,
        path: str = "",
    ):
        self._fd = fd
        self._size = total_size
        self._path = path or getattr(fd, "name", "")
        self._mmap: Optional[mmap.mmap] = None
        self._using_mmap = False
        self._owns_fd = False
        self.reads = 0

        if use_mmap and total_size > 0:
            self._try_mmap()

    @classmethod
    def open(cls, path: str, use_mmap: bool = True) -> "DiskReader":
        """Open an image path read-only and measure its size."""
        try:
            fd = open(path, "rb")
        except OSError as e:
            raise ImageIOError(
                f"Cannot open image {path}: {e}", operation="open") from e
        try:
            size = _measure_size(fd)
        except OSError as e:
            fd.close()
            raise ImageIOError(
                f"Cannot determine size of {path}: {e}", operation="stat") from e
        reader = cls(fd, size, use_mmap=use_mmap, path=path)
        reader._owns_fd = True
        return reader

    def _try_mmap(self):
        """Attempt to memory-map the file/device."""
        try:
            self._mmap = mmap.mmap(
                self._fd.fileno(),
                0,  # Map entire file
                access=mmap.ACCESS_READ,
            )
            self._using_mmap = True
            logger.debug(
                "mmap enabled: %d bytes (%.1f GB)",
                self._size, self._size / (1024 ** 3),
            )
        except (OSError, ValueError, OverflowError) as e:
            logger.info("mmap unavailable (%s), using buffered reads", e)
            self._mmap = None
            self._using_mmap = False

    @property
    def is_mmap(self) -> bool:
        return self._using_mmap

    @property
    def size(self) -> int:
        return self._size

    @property
    def path(self) -> str:
        return self._path

    def read_at(self, offset: int, size: int) -> bytes:
        """
        Read exactly `size` bytes starting at `offset`.

        The range must lie inside the image. Raises ImageIOError on a failed
        or short read.
        """
        if offset < 0 or size < 0 or offset + size > self._size:
            raise ImageIOError(
                f"Read outside image bounds (size={self._size})",
                operation="read", offset=offset, length=size,
            )
        if size == 0:
            return b""

        self.reads += 1
        if self._using_mmap and self._mmap is not None:
            data = self._mmap[offset:offset + size]
        else:
            try:
                self._fd.seek(offset)
                data = self._fd.read(size)
            except OSError as e:
                raise ImageIOError(
                    f"Read failed: {e}", operation="read",
                    offset=offset, length=size,
                ) from e

        if len(data) != size:
            raise ImageIOError(
                f"Short read: got {len(data)} bytes",
                operation="read", offset=offset, length=size,
            )
        return data

    def block_span(self, index: int, block_size: int) -> tuple[int, int]:
        """(offset, length) of block `index`; the final block may be short."""
        offset = index * block_size
        return offset, min(block_size, self._size - offset)

    def total_blocks(self, block_size: int) -> int:
        if block_size <= 0:
            raise ConfigurationError(
                f"block size must be positive, got {block_size}")
        return ceil_div(self._size, block_size)

    def iter_blocks_backward(
        self,
        block_size: int,
        start: Optional[int] = None,
        stop: int = 0,
    ) -> Iterator[tuple[int, bytes]]:
        """
        Yield (block_index, data) from block `start` down to block `stop`.

        `start` defaults to the last block. The generator reads one block per
        step and is not restartable.
        """
        total = self.total_blocks(block_size)
        if start is None:
            start = total - 1
        for index in range(start, stop - 1, -1):
            offset, length = self.block_span(index, block_size)
            yield index, self.read_at(offset, length)

    def iter_ranges(
        self,
        start: int,
        end: int,
        read_size: int = 4 * 1024 * 1024,
    ) -> Iterator[tuple[int, bytes]]:
        """Forward (offset, data) reads covering [start, end)."""
        offset = start
        while offset < end:
            n = min(read_size, end - offset)
            yield offset, self.read_at(offset, n)
            offset += n

    def close(self):
        """Release mmap and the file handle (if we opened it)."""
        if self._mmap is not None:
            self._mmap.close()
            self._mmap = None
            self._using_mmap = False
        if self._owns_fd and not self._fd.closed:
            self._fd.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _measure_size(fd: BinaryIO) -> int:
    """Byte size of a regular file or a block device (seek to end)."""
    st = os.fstat(fd.fileno())
    if st.st_size > 0:
        return st.st_size
    fd.seek(0, os.SEEK_END)
    size = fd.tell()
    fd.seek(0)
    return size
