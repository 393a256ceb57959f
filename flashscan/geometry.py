"""
Geometry Resolver — block size, window sizes and capacity candidates.

Each size profile is tuned for an image of roughly its nominal size: coarser
blocks on bigger images keep the number of hashes (and the run time) in the
same range. Explicit overrides always win over the profile values.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .errors import ConfigurationError
from .mmap_reader import ceil_div

logger = logging.getLogger(__name__)

KiB = 1024
MiB = 1024 * KiB
GiB = 1024 * MiB
TiB = 1024 * GiB

DEFAULT_BLOCK_SIZE = 1 * MiB


@dataclass(frozen=True)
class SizeProfile:
    name: str
    nominal_bytes: int
    block_size: int
    sample_size: int
    tail_size: int
    candidates: tuple[int, ...]


def _gib(*values) -> tuple[int, ...]:
    return tuple(int(v * GiB) for v in values)


PROFILES: dict[str, SizeProfile] = {
    p.name: p for p in (
        SizeProfile("1g", 1 * GiB, 1 * MiB, 256 * MiB, 32 * MiB,
                    (128 * MiB, 256 * MiB, 512 * MiB, 768 * MiB)),
        SizeProfile("2g", 2 * GiB, 1 * MiB, 512 * MiB, 64 * MiB,
                    (256 * MiB, 512 * MiB, 1024 * MiB, 1536 * MiB)),
        SizeProfile("4g", 4 * GiB, 2 * MiB, 1 * GiB, 64 * MiB,
                    _gib(0.5, 1, 2, 3)),
        SizeProfile("8g", 8 * GiB, 4 * MiB, 2 * GiB, 128 * MiB,
                    _gib(1, 2, 4, 6)),
        SizeProfile("16g", 16 * GiB, 4 * MiB, 4 * GiB, 128 * MiB,
                    _gib(2, 4, 8, 12)),
        SizeProfile("32g", 32 * GiB, 8 * MiB, 8 * GiB, 256 * MiB,
                    _gib(4, 8, 16, 24)),
        # Field-tested default: 64 GB image in ~10 minutes
        SizeProfile("64g", 64 * GiB, 8 * MiB, 12 * GiB, 256 * MiB,
                    _gib(8, 16, 32, 40, 48)),
        SizeProfile("128g", 128 * GiB, 16 * MiB, 16 * GiB, 512 * MiB,
                    _gib(16, 32, 64, 96)),
        SizeProfile("256g", 256 * GiB, 16 * MiB, 24 * GiB, 512 * MiB,
                    _gib(32, 64, 128, 192)),
    )
}


@dataclass
class Geometry:
    """Resolved tunables for one image."""
    size_bytes: int
    block_size: int
    sample_size: int
    tail_size: int
    candidates: list[int] = field(default_factory=list)
    profile: str = ""

    @property
    def total_blocks(self) -> int:
        return ceil_div(self.size_bytes, self.block_size)

    @property
    def sample_blocks(self) -> int:
        return min(ceil_div(self.sample_size, self.block_size), self.total_blocks)

    @property
    def tail_blocks(self) -> int:
        return min(max(1, self.tail_size // self.block_size), self.total_blocks)

    @property
    def tail_start_block(self) -> int:
        return self.total_blocks - self.tail_blocks

    @property
    def tail_offset(self) -> int:
        return self.tail_start_block * self.block_size

    @property
    def sample_bytes(self) -> int:
        """Bytes actually covered by the sample blocks."""
        return min(self.sample_blocks * self.block_size, self.size_bytes)

    def to_dict(self) -> dict:
        return {
            "size_bytes": self.size_bytes,
            "profile": self.profile,
            "block_size": self.block_size,
            "total_blocks": self.total_blocks,
            "sample_size": self.sample_size,
            "sample_blocks": self.sample_blocks,
            "tail_size": self.tail_size,
            "tail_blocks": self.tail_blocks,
            "candidates": list(self.candidates),
        }


def closest_profile(size_bytes: int) -> SizeProfile:
    """Profile whose nominal size is numerically closest (ties → smaller)."""
    return min(
        PROFILES.values(),
        key=lambda p: (abs(p.nominal_bytes - size_bytes), p.nominal_bytes),
    )


def get_profile(name: str) -> SizeProfile:
    try:
        return PROFILES[name.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown profile {name!r} (choose from {', '.join(PROFILES)})",
            operation="geometry") from None


def resolve_geometry(
    size_bytes: int,
    profile: Optional[str] = None,
    block_size: Optional[int] = None,
    sample_size: Optional[int] = None,
    tail_size: Optional[int] = None,
    candidates: Optional[Sequence[int]] = None,
) -> Geometry:
    """
    Resolve tunables for an image of `size_bytes`.

    Explicit values override the profile; without a profile name the profile
    closest to the image size supplies whatever was not given.
    """
    if size_bytes <= 0:
        raise ConfigurationError(
            "Image is empty", operation="geometry", length=size_bytes)

    if profile:
        base = get_profile(profile)
    else:
        base = closest_profile(size_bytes)

    geo = Geometry(
        size_bytes=size_bytes,
        block_size=base.block_size if block_size is None else int(block_size),
        sample_size=base.sample_size if sample_size is None else int(sample_size),
        tail_size=base.tail_size if tail_size is None else int(tail_size),
        candidates=list(base.candidates if candidates is None else candidates),
        profile=base.name,
    )

    if geo.block_size <= 0:
        raise ConfigurationError(
            f"block size must be positive, got {geo.block_size}",
            operation="geometry")
    if geo.sample_size < 0 or geo.tail_size < 0:
        raise ConfigurationError(
            "sample and tail sizes must not be negative", operation="geometry")
    for c in geo.candidates:
        if not isinstance(c, int) or isinstance(c, bool) or c <= 0:
            raise ConfigurationError(
                f"Candidate offsets must be positive integers, got {c!r}",
                operation="geometry")

    logger.info(
        "Geometry: profile=%s block=%s total_blocks=%d sample=%d blocks "
        "tail=%d blocks candidates=%d",
        geo.profile, human_size(geo.block_size), geo.total_blocks,
        geo.sample_blocks, geo.tail_blocks, len(geo.candidates),
    )
    return geo


# ─────────────────────────────────────────────────────────────
#  Size parsing / formatting
# ─────────────────────────────────────────────────────────────

_UNITS = {
    "": 1, "b": 1,
    "k": KiB, "kb": KiB, "kib": KiB,
    "m": MiB, "mb": MiB, "mib": MiB,
    "g": GiB, "gb": GiB, "gib": GiB,
    "t": TiB, "tb": TiB, "tib": TiB,
}

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")


def parse_size(text) -> int:
    """'8M', '12GiB', '0.5g', '4096' → bytes (binary units)."""
    if isinstance(text, int):
        return text
    m = _SIZE_RE.match(str(text))
    if not m:
        raise ConfigurationError(f"Malformed size: {text!r}")
    unit = m.group(2).lower()
    if unit not in _UNITS:
        raise ConfigurationError(f"Unknown size unit in {text!r}")
    return int(float(m.group(1)) * _UNITS[unit])


def parse_candidates(text: str) -> list[int]:
    """Comma-separated candidate capacities, e.g. '8G,16G,32768M'."""
    parts = [p.strip() for p in text.split(",")]
    if not text.strip() or any(not p for p in parts):
        raise ConfigurationError(f"Malformed candidate list: {text!r}")
    values = [parse_size(p) for p in parts]
    for v in values:
        if v <= 0:
            raise ConfigurationError(f"Candidate must be positive: {text!r}")
    return values


def human_size(n) -> str:
    s = float(n)
    for u in ("B", "KiB", "MiB", "GiB"):
        if abs(s) < 1024:
            return f"{s:.1f} {u}" if u != "B" else f"{int(s)} B"
        s /= 1024
    return f"{s:.1f} TiB"
