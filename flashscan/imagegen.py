"""
Synthetic flash image generator — fixtures with a known data boundary.

Modes:
  empty    — pad only (no boundary)
  full     — data everywhere
  partial  — data for the first N bytes, pad after
  weird    — last real sector inside the first half of the image, with a
             partially filled last sector
  range    — data in explicit sector ranges ("23423-23555,30000,40000:40010")
  alias    — N bytes of data, then the same content again and again
             (what a wrapped fake-capacity device reads back as)

The image is built on a fresh output file; nothing else is touched.
"""

import os
import re
import random
import logging
from dataclasses import dataclass
from typing import Optional

from .errors import ConfigurationError, ImageIOError
from .geometry import GiB, MiB
from .mmap_reader import SECTOR_SIZE, ceil_div

logger = logging.getLogger(__name__)

MODES = ("empty", "full", "partial", "weird", "range", "alias")
DATA_MODES = ("random", "pattern", "seeded")

# Fake-capacity profiles for generated images
IMAGE_PROFILES = {
    "1g": 1 * GiB, "2g": 2 * GiB, "4g": 4 * GiB,
    "8g": 8 * GiB, "16g": 16 * GiB, "32g": 32 * GiB,
}

_WRITE_CHUNK = 1 * MiB
_RANGE_RE = re.compile(r"^(\d+)(?:[-:](\d+))?$")


@dataclass
class GeneratedImage:
    path: str
    size_bytes: int
    mode: str
    last_data_sector: Optional[int]     # None → image holds no data

    @property
    def last_data_offset(self) -> Optional[int]:
        if self.last_data_sector is None:
            return None
        return self.last_data_sector * SECTOR_SIZE


class DataSource:
    """Produces the "real data" bytes for one generated image."""

    def __init__(self, mode: str = "random", seed: Optional[int] = None):
        if mode not in DATA_MODES:
            raise ConfigurationError(
                f"data mode must be one of {', '.join(DATA_MODES)}")
        self.mode = mode
        self.seed = seed
        if mode == "seeded":
            self._rnd = random.Random(seed if seed is not None else 0)
        elif seed is not None:
            self._rnd = random.Random(seed)
        else:
            self._rnd = None

    def take(self, n: int) -> bytes:
        if self.mode == "pattern":
            return (b"\xAA\x55" * (n // 2 + 1))[:n]
        if self._rnd is not None:
            return self._rnd.randbytes(n)
        return os.urandom(n)


def parse_fill_ranges(spec: str) -> list[tuple[int, int]]:
    """'23423-23555,30000,40000:40010' → [(23423, 23555), (30000, 30000), ...]."""
    if not spec or not spec.strip():
        raise ConfigurationError("range mode requires a fill-range spec")
    ranges = []
    for part in spec.split(","):
        m = _RANGE_RE.match(part.strip())
        if not m:
            raise ConfigurationError(f"Invalid range spec: {part!r}")
        start = int(m.group(1))
        end = int(m.group(2)) if m.group(2) is not None else start
        if start > end:
            start, end = end, start
        ranges.append((start, end))
    return ranges


def _write_pad(f, size: int, pad: int):
    chunk = bytes([pad]) * _WRITE_CHUNK
    remaining = size
    while remaining > 0:
        n = min(remaining, len(chunk))
        f.write(chunk[:n])
        remaining -= n


def _write_data(f, offset: int, size: int, source: DataSource):
    f.seek(offset)
    remaining = size
    while remaining > 0:
        n = min(remaining, _WRITE_CHUNK)
        f.write(source.take(n))
        remaining -= n


def generate_image(
    path: str,
    size_bytes: int,
    mode: str = "partial",
    pad: int = 0xFF,
    data: str = "random",
    seed: Optional[int] = None,
    data_bytes: Optional[int] = None,
    percent: float = 100,
    fill_before: int = 0,
    partial_bytes: Optional[int] = None,
    fill_ranges: Optional[str] = None,
    real_bytes: Optional[int] = None,
) -> GeneratedImage:
    """Write a synthetic image and report where its last data sector is."""
    if mode not in MODES:
        raise ConfigurationError(f"Unknown mode: {mode}")
    if size_bytes <= 0:
        raise ConfigurationError("Image size must be positive")
    if not 0 <= pad <= 255:
        raise ConfigurationError(f"Pad byte out of range: {pad}")
    source = DataSource(data, seed)
    total_sectors = ceil_div(size_bytes, SECTOR_SIZE)

    logger.info("Creating %s (%d bytes), mode=%s, pad=%02X",
                path, size_bytes, mode, pad)
    try:
        with open(path, "w+b") as f:
            _write_pad(f, size_bytes, pad)
            last = _MODE_WRITERS[mode](
                f, size_bytes, total_sectors, pad, source,
                data_bytes=data_bytes, percent=percent,
                fill_before=fill_before, partial_bytes=partial_bytes,
                fill_ranges=fill_ranges, real_bytes=real_bytes, seed=seed,
            )
    except OSError as e:
        raise ImageIOError(
            f"Cannot write image {path}: {e}", operation="generate") from e

    if last is not None:
        logger.info("Expected last data sector: %d (offset %d bytes)",
                    last, last * SECTOR_SIZE)
    else:
        logger.info("Expected last data sector: none")
    return GeneratedImage(path, size_bytes, mode, last)


# ─────────────────────────────────────────────────────────────
#  Mode writers: each returns the last data sector (or None)
# ─────────────────────────────────────────────────────────────

def _run_empty(f, size, total_sectors, pad, source, **kw):
    return None


def _run_full(f, size, total_sectors, pad, source, **kw):
    _write_data(f, 0, size, source)
    return total_sectors - 1


def _run_partial(f, size, total_sectors, pad, source, data_bytes=None, **kw):
    if data_bytes is None:
        raise ConfigurationError("partial mode requires a data size")
    n = max(0, min(int(data_bytes), size))
    _write_data(f, 0, n, source)
    return ceil_div(n, SECTOR_SIZE) - 1 if n else None


def _run_weird(f, size, total_sectors, pad, source, percent=100,
               fill_before=0, partial_bytes=None, seed=None, **kw):
    if not 0 <= percent <= 100:
        raise ConfigurationError("percent must be within 0-100")
    half = size // 2
    last = min(int(half * percent / 100) // SECTOR_SIZE, total_sectors - 1)

    if fill_before > 0:
        first = max(0, last - fill_before + 1)
        _write_data(f, first * SECTOR_SIZE, (last - first + 1) * SECTOR_SIZE,
                    source)

    if partial_bytes is None:
        partial_bytes = random.Random(seed).randrange(1, 256)
    if not 1 <= partial_bytes <= 255:
        raise ConfigurationError("partial bytes must be within 1-255")

    real = source.take(partial_bytes)
    # Last real byte must differ from the pad, or the boundary would move
    if real[-1] == pad:
        real = real[:-1] + bytes([pad ^ 0xFF or 0x01])
    sector_len = min(SECTOR_SIZE, size - last * SECTOR_SIZE)
    buf = (real + bytes([pad]) * SECTOR_SIZE)[:sector_len]
    f.seek(last * SECTOR_SIZE)
    f.write(buf)
    return last


def _run_range(f, size, total_sectors, pad, source, fill_ranges=None, **kw):
    last = None
    for start, end in parse_fill_ranges(fill_ranges or ""):
        end = min(end, total_sectors - 1)
        if end < start:
            continue
        logger.debug("Filling sectors %d..%d", start, end)
        offset = start * SECTOR_SIZE
        length = min((end + 1) * SECTOR_SIZE, size) - offset
        _write_data(f, offset, length, source)
        if last is None or end > last:
            last = end
    return last


def _run_alias(f, size, total_sectors, pad, source, real_bytes=None, **kw):
    if not real_bytes or real_bytes <= 0:
        raise ConfigurationError("alias mode requires a real capacity")
    real = min(int(real_bytes), size)
    _write_data(f, 0, real, source)
    # Wrap: every byte past the real capacity repeats the byte `real` earlier.
    # The source range [offset - real, offset - real + n) is always written.
    offset = real
    while offset < size:
        n = min(_WRITE_CHUNK, real, size - offset)
        f.seek(offset - real)
        chunk = f.read(n)
        if len(chunk) != n:
            raise ImageIOError(
                f"Short read while wrapping at {offset - real}",
                operation="generate", offset=offset - real, length=n)
        f.seek(offset)
        f.write(chunk)
        offset += n
    return total_sectors - 1


_MODE_WRITERS = {
    "empty": _run_empty,
    "full": _run_full,
    "partial": _run_partial,
    "weird": _run_weird,
    "range": _run_range,
    "alias": _run_alias,
}
