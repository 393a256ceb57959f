"""
Alias Detector — wrap/modulo aliasing checks for fake-capacity flash.

A counterfeit device reports, say, 64 GB while holding 8 GB of NAND: writes
past the real capacity wrap around onto earlier physical pages. Read back,
the image repeats itself, so the tail of the image equals the region that
is exactly "real capacity" bytes earlier.

PHASES
──────
0. Tail peek      — first 256 bytes of the last MiB (heuristic, not proof).
1. Sample hashing — hash the leading sample region block by block and
                    report block-hash collisions (repeated content).
2. Tail hashing   — hash the last T blocks.
3. Comparison     — for each candidate capacity C, hash the T-block window
                    starting C bytes before the tail and count positional
                    matches.
4. Interpretation — STRONG / WEAK / NONE from the best match count.

Uniform padding (all-FF / all-00 blocks) hashes identically wherever it
appears, so it produces duplicate groups and alias hits on genuine media
too. Such groups are flagged `pad_only`, never dropped.
"""

import os
import math
import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .errors import AmbiguousSignalError, ConfigurationError, ImageIOError
from .extract import write_atomic
from .geometry import Geometry, MiB, human_size, resolve_geometry
from .hashing import BlockHash, ContentHasher, select_hasher
from .mmap_reader import DiskReader
from .padding import PadSpec

logger = logging.getLogger(__name__)

DEFAULT_STRONG_RATIO = 0.5
PEEK_WINDOW = 1 * MiB
PEEK_BYTES = 256


class SignalTier:
    STRONG = "STRONG"
    WEAK = "WEAK"
    NONE = "NONE"


# ─────────────────────────────────────────────────────────────
#  Data Classes
# ─────────────────────────────────────────────────────────────

@dataclass
class DuplicateGroup:
    """Blocks of the sample region sharing one digest."""
    digest: str
    indices: list[int]
    pad_only: bool = False

    @property
    def first_index(self) -> int:
        return self.indices[0]


@dataclass
class MatchResult:
    candidate: int                          # Hypothesized capacity (bytes)
    hits: int = 0
    total: int = 0
    window_offset: Optional[int] = None     # Start of the comparison window
    skipped_reason: str = ""

    @property
    def skipped(self) -> bool:
        return bool(self.skipped_reason)

    @property
    def match_percent(self) -> float:
        if self.total == 0:
            return 0.0
        return 100.0 * self.hits / self.total

    def to_dict(self) -> dict:
        return {
            "candidate": self.candidate,
            "candidate_human": human_size(self.candidate),
            "hits": self.hits,
            "total": self.total,
            "window_offset": self.window_offset,
            "skipped": self.skipped_reason or None,
        }


@dataclass
class AliasReport:
    geometry: Geometry
    hasher: str
    duplicates: list[DuplicateGroup] = field(default_factory=list)
    matches: list[MatchResult] = field(default_factory=list)
    best: Optional[MatchResult] = None
    tier: str = SignalTier.NONE
    threshold: int = 0
    tail_peek: bytes = b""

    @property
    def tail_blocks(self) -> int:
        return self.geometry.tail_blocks

    def raise_for_signal(self):
        """Raise AmbiguousSignalError unless the signal is STRONG."""
        if self.tier != SignalTier.STRONG:
            best = self.best.candidate if self.best else None
            raise AmbiguousSignalError(
                f"{self.tier} alias signal (best candidate {best}, "
                f"{self.best.hits if self.best else 0}/{self.tail_blocks} hits)",
                report=self,
                operation="classify",
            )

    def to_dict(self) -> dict:
        return {
            "geometry": self.geometry.to_dict(),
            "hasher": self.hasher,
            "duplicates": [
                {"digest": g.digest, "indices": g.indices, "pad_only": g.pad_only}
                for g in self.duplicates
            ],
            "matches": [m.to_dict() for m in self.matches],
            "best": self.best.to_dict() if self.best else None,
            "tier": self.tier,
            "threshold": self.threshold,
            "tail_peek": self.tail_peek.hex(),
        }


# ─────────────────────────────────────────────────────────────
#  Duplicate Detector
# ─────────────────────────────────────────────────────────────

def find_duplicates(hashes: BlockHash) -> list[DuplicateGroup]:
    """Group block indices by digest; keep groups of two or more."""
    by_digest: dict[str, list[int]] = {}
    for index, digest in hashes.items():
        by_digest.setdefault(digest, []).append(index)
    return [
        DuplicateGroup(digest=d, indices=idx)
        for d, idx in by_digest.items()
        if len(idx) >= 2
    ]


def _mark_pad_only(
    reader: DiskReader,
    groups: list[DuplicateGroup],
    block_size: int,
    pad: PadSpec,
):
    for g in groups:
        offset, length = reader.block_span(g.first_index, block_size)
        g.pad_only = pad.is_pad(reader.read_at(offset, length))
        if g.pad_only:
            logger.warning(
                "Duplicate group %s… (%d blocks) is uniform padding — "
                "common on genuine media too",
                g.digest[:16], len(g.indices),
            )


def dump_duplicates(
    reader: DiskReader,
    groups: Sequence[DuplicateGroup],
    block_size: int,
    out_dir: str,
) -> list[str]:
    """Write the first occurrence of each duplicate block to `out_dir`."""
    paths = []
    for g in groups:
        offset, length = reader.block_span(g.first_index, block_size)
        path = os.path.join(
            out_dir, f"dup_{g.first_index:08d}_{g.digest[:16]}.bin")
        write_atomic(path, [reader.read_at(offset, length)],
                     source_path=reader.path, operation="dump_duplicates")
        paths.append(path)
    logger.info("Dumped %d duplicate block(s) to %s", len(paths), out_dir)
    return paths


# ─────────────────────────────────────────────────────────────
#  Alias Comparator
# ─────────────────────────────────────────────────────────────

def _tail_lengths(geo: Geometry) -> list[int]:
    lengths = []
    for i in range(geo.tail_start_block, geo.total_blocks):
        offset = i * geo.block_size
        lengths.append(min(geo.block_size, geo.size_bytes - offset))
    return lengths


def compare_candidates(
    reader: DiskReader,
    geo: Geometry,
    hasher: ContentHasher,
    tail_hashes: Optional[BlockHash] = None,
) -> tuple[list[MatchResult], Optional[MatchResult]]:
    """
    Compare the tail window against a window `candidate` bytes earlier,
    for every candidate in listed order.

    Returns (all results, best). Ties go to the earliest-listed candidate.
    """
    lengths = _tail_lengths(geo)
    tail_start = geo.tail_offset
    tail_len = sum(lengths)
    if tail_hashes is None:
        tail_hashes = hasher.hash_range(
            reader, tail_start, tail_len, geo.block_size, lengths=lengths)

    results: list[MatchResult] = []
    best: Optional[MatchResult] = None
    for cand in geo.candidates:
        mr = MatchResult(candidate=cand, total=len(lengths))
        window = tail_start - cand
        if cand <= 0:
            mr.skipped_reason = "candidate must be positive"
        elif window < 0:
            mr.skipped_reason = "window would start before byte 0"
        elif cand < tail_len:
            mr.skipped_reason = "window would overlap the tail window"
        if mr.skipped:
            logger.warning(
                "Candidate %s skipped: %s", human_size(cand), mr.skipped_reason)
            results.append(mr)
            continue

        mr.window_offset = window
        logger.info(
            "Candidate %s: comparing tail vs offset %d", human_size(cand), window)
        cand_hashes = hasher.hash_range(
            reader, window, tail_len, geo.block_size, lengths=lengths)
        if len(cand_hashes) != len(tail_hashes):
            raise ImageIOError(
                "Comparison window hash count differs from tail window",
                operation="compare", offset=window, length=tail_len)

        mr.hits = sum(
            1 for i, digest in tail_hashes.items() if cand_hashes[i] == digest)
        logger.info(
            "    Result: %2d/%2d matches (%.1f%%)",
            mr.hits, mr.total, mr.match_percent)
        results.append(mr)

        if best is None or mr.hits > best.hits:
            best = mr
    return results, best


# ─────────────────────────────────────────────────────────────
#  Classifier
# ─────────────────────────────────────────────────────────────

def strong_threshold(tail_blocks: int, strong_ratio: float = DEFAULT_STRONG_RATIO) -> int:
    if not 0 < strong_ratio <= 1:
        raise ConfigurationError(
            f"strong ratio must be in (0, 1], got {strong_ratio}",
            operation="classify")
    return max(1, math.ceil(tail_blocks * strong_ratio))


def classify(
    best: Optional[MatchResult],
    tail_blocks: int,
    strong_ratio: float = DEFAULT_STRONG_RATIO,
) -> str:
    """hits ≥ threshold → STRONG; 0 < hits < threshold → WEAK; else NONE."""
    threshold = strong_threshold(tail_blocks, strong_ratio)
    if best is None or best.hits == 0:
        return SignalTier.NONE
    if best.hits >= threshold:
        return SignalTier.STRONG
    return SignalTier.WEAK


# ─────────────────────────────────────────────────────────────
#  Tail peek
# ─────────────────────────────────────────────────────────────

def peek_tail(
    reader: DiskReader,
    window: int = PEEK_WINDOW,
    count: int = PEEK_BYTES,
) -> bytes:
    """First `count` bytes of the last `window` bytes of the image."""
    start = max(0, reader.size - window)
    return reader.read_at(start, min(count, reader.size - start))


def hexdump(data: bytes, base: int = 0, width: int = 16) -> str:
    lines = []
    for i in range(0, len(data), width):
        row = data[i:i + width]
        hexpart = " ".join(f"{b:02x}" for b in row)
        text = "".join(chr(b) if 32 <= b < 127 else "." for b in row)
        lines.append(f"{base + i:08x}: {hexpart:<{width * 3 - 1}}  {text}")
    return "\n".join(lines)


# ─────────────────────────────────────────────────────────────
#  Orchestration
# ─────────────────────────────────────────────────────────────

def detect_aliasing(
    reader: DiskReader,
    geo: Optional[Geometry] = None,
    hasher: Optional[ContentHasher] = None,
    pad: Optional[PadSpec] = None,
    strong_ratio: float = DEFAULT_STRONG_RATIO,
    dump_dir: Optional[str] = None,
    peek: bool = True,
) -> AliasReport:
    """Run all phases over an open image and return the report."""
    if geo is None:
        geo = resolve_geometry(reader.size)
    if geo.size_bytes != reader.size:
        raise ConfigurationError(
            f"Geometry is for {geo.size_bytes} bytes, image has {reader.size}",
            operation="detect_aliasing")
    hasher = hasher or select_hasher()
    pad = pad or PadSpec.of([0xFF, 0x00])
    threshold = strong_threshold(geo.tail_blocks, strong_ratio)

    report = AliasReport(geometry=geo, hasher=hasher.name, threshold=threshold)
    logger.info("Hash backend: %s", hasher.name)

    if peek:
        report.tail_peek = peek_tail(reader)

    # Phase 1: sample hashing
    logger.info(
        "Sample region: hashing %d block(s) (%s)",
        geo.sample_blocks, human_size(geo.sample_bytes))
    sample_hashes = hasher.hash_range(
        reader, 0, geo.sample_bytes, geo.block_size)
    report.duplicates = find_duplicates(sample_hashes)
    _mark_pad_only(reader, report.duplicates, geo.block_size, pad)
    if report.duplicates:
        logger.warning(
            "Found %d duplicate block-hash group(s) in the sample region",
            len(report.duplicates))
    else:
        logger.info("No duplicate block hashes in the sample region")
    if dump_dir and report.duplicates:
        dump_duplicates(reader, report.duplicates, geo.block_size, dump_dir)

    # Phases 2 + 3: tail window vs candidates
    report.matches, report.best = compare_candidates(reader, geo, hasher)

    # Phase 4: interpretation
    report.tier = classify(report.best, geo.tail_blocks, strong_ratio)
    logger.info(
        "Signal: %s (best %s, threshold %d/%d)",
        report.tier,
        human_size(report.best.candidate) if report.best else "none",
        threshold, geo.tail_blocks,
    )
    return report


def analyze_image(
    path: str,
    profile: Optional[str] = None,
    block_size: Optional[int] = None,
    sample_size: Optional[int] = None,
    tail_size: Optional[int] = None,
    candidates: Optional[Sequence[int]] = None,
    hasher: Optional[str] = None,
    pad: Optional[PadSpec] = None,
    strong_ratio: float = DEFAULT_STRONG_RATIO,
    dump_dir: Optional[str] = None,
    peek: bool = True,
) -> AliasReport:
    """Open `path` read-only, resolve its geometry and run alias detection."""
    with DiskReader.open(path) as reader:
        geo = resolve_geometry(
            reader.size, profile=profile, block_size=block_size,
            sample_size=sample_size, tail_size=tail_size,
            candidates=candidates,
        )
        return detect_aliasing(
            reader, geo, hasher=select_hasher(hasher), pad=pad,
            strong_ratio=strong_ratio, dump_dir=dump_dir, peek=peek,
        )
