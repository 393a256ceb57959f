"""
Extractor — copy byte ranges around a resolved boundary into new files.

Outputs (all read from the source, never written back):
  trimmed      — image bytes up to and including the last non-pad sector
  last sector  — the 512-byte last non-pad sector alone
  pair         — last non-pad sector followed by the first pad sector

Each file is streamed into a freshly created "<name>.<random>.part" file in
the target directory and renamed into place when complete. The temp file is
always new, so it can never alias the source image; an interrupted or failed
extraction leaves no file under the final name.
"""

import os
import logging
import tempfile
from typing import Iterable, Iterator

from .boundary import BoundaryResult
from .errors import ConfigurationError, ImageIOError
from .geometry import human_size
from .mmap_reader import DiskReader, SECTOR_SIZE, align_up

logger = logging.getLogger(__name__)

COPY_CHUNK = 4 * 1024 * 1024


def _check_target(source_path: str, out_path: str, operation: str):
    if not source_path:
        return
    if os.path.realpath(out_path) == os.path.realpath(source_path):
        raise ConfigurationError(
            f"Refusing to write over the source image: {out_path}",
            operation=operation)
    if os.path.exists(out_path) and os.path.samefile(out_path, source_path):
        raise ConfigurationError(
            f"Output is the source image: {out_path}", operation=operation)


def write_atomic(
    out_path: str,
    chunks: Iterable[bytes],
    source_path: str = "",
    operation: str = "extract",
) -> int:
    """
    Stream `chunks` into `out_path` via a new temp file in the same directory.

    `source_path` names the image being read; writing over it is refused.
    Returns the number of bytes written.
    """
    _check_target(source_path, out_path, operation)
    parent = os.path.dirname(os.path.abspath(out_path))
    try:
        os.makedirs(parent, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            dir=parent, prefix=os.path.basename(out_path) + ".", suffix=".part")
    except OSError as e:
        raise ImageIOError(
            f"Cannot create output in {parent}: {e}", operation=operation) from e

    written = 0
    try:
        with os.fdopen(fd, "wb") as f:
            for chunk in chunks:
                f.write(chunk)
                written += len(chunk)
        os.replace(temp_path, out_path)
    except OSError as e:
        if isinstance(e, ImageIOError):
            raise
        raise ImageIOError(
            f"Cannot write {out_path}: {e}", operation=operation) from e
    finally:
        if os.path.exists(temp_path):
            os.remove(temp_path)
    return written


def _require_refined(result: BoundaryResult):
    if not result.is_refined or result.sector is None:
        raise ConfigurationError(
            f"Extraction needs a refined boundary (status={result.status})",
            operation="extract")


def _iter_chunks(
    reader: DiskReader,
    ranges: Iterable[tuple[int, int]],
) -> Iterator[bytes]:
    for offset, length in ranges:
        for _, chunk in reader.iter_ranges(offset, offset + length, COPY_CHUNK):
            yield chunk


def _write_ranges(
    reader: DiskReader,
    out_path: str,
    ranges: Iterable[tuple[int, int]],
) -> int:
    """Copy (offset, length) ranges of the source to out_path."""
    written = write_atomic(
        out_path, _iter_chunks(reader, ranges), source_path=reader.path)
    logger.info("Wrote %s (%s)", out_path, human_size(written))
    return written


def _sector_span(reader: DiskReader, sector: int) -> tuple[int, int]:
    offset = sector * SECTOR_SIZE
    return offset, min(SECTOR_SIZE, reader.size - offset)


def extract_trimmed(
    reader: DiskReader,
    result: BoundaryResult,
    out_path: str,
) -> int:
    """Image bytes [0, end of last non-pad sector)."""
    _require_refined(result)
    end = min(align_up(result.sector_offset + 1), reader.size)
    return _write_ranges(reader, out_path, [(0, end)])


def extract_last_sector(
    reader: DiskReader,
    result: BoundaryResult,
    out_path: str,
) -> int:
    """The last non-pad sector alone."""
    _require_refined(result)
    return _write_ranges(reader, out_path, [_sector_span(reader, result.sector)])


def extract_boundary_pair(
    reader: DiskReader,
    result: BoundaryResult,
    out_path: str,
) -> int:
    """Last non-pad sector, then the first pad sector (if not at EOF)."""
    _require_refined(result)
    ranges = [_sector_span(reader, result.sector)]
    if result.first_pad_sector is not None:
        ranges.append(_sector_span(reader, result.first_pad_sector))
    else:
        logger.warning(
            "Boundary is at EOF, pair file holds the last sector only")
    return _write_ranges(reader, out_path, ranges)
