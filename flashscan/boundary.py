"""
Boundary Locator — find the last block, sector and byte holding real data.

SCAN STRATEGIES
───────────────
All three walk backward from the start block (default: last block) and
stop at the first block containing a non-pad byte. They must agree on the
resulting block index; they differ only in read pattern and CPU cost.

1. DIRECT
   • One read + one pad test per block.
   • Simple; read-call count grows with the size of the trailing pad region.

2. WINDOWED
   • Blocks are grouped into chunks (chunk_size ≥ block_size, aligned to
     block-index multiples). A whole chunk is tested first; only a hit
     chunk is re-read block by block.
   • Far fewer read calls across large erased regions.

3. PATTERN
   • Each chunk is handed to a BytePatternMatcher that reports the offset
     of the rightmost non-pad byte; the block index follows directly.
   • No coarse/fine split, no re-read.

REFINEMENT
──────────
Once a block is found, its byte range is quartered repeatedly (rightmost
quarter tested first) until it is narrower than one sector. The sectors
overlapping that range are scanned backward for the last non-pad sector,
and in exact mode the matcher pins down the last non-pad byte.

State: SCANNING → FOUND_BLOCK → REFINING → REFINED, or SCANNING → NOT_FOUND.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

from .errors import ConfigurationError, ImageIOError, NotFoundError
from .geometry import DEFAULT_BLOCK_SIZE, MiB, human_size
from .mmap_reader import DiskReader, SECTOR_SIZE, align_down, ceil_div
from .padding import BytePatternMatcher, PadSpec, select_matcher

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * MiB
DEFAULT_PAD = PadSpec.of([0xFF])

# Log a progress line every N blocks / chunks
_PROGRESS_EVERY = 100


class ScanStatus:
    SCANNING = "SCANNING"
    FOUND_BLOCK = "FOUND_BLOCK"
    REFINING = "REFINING"
    REFINED = "REFINED"
    NOT_FOUND = "NOT_FOUND"


@dataclass
class ScanState:
    """Mutable state of one locate() call. Never shared between calls."""
    search_cursor: int
    lower_bound: int = 0
    upper_bound: int = 0
    status: str = ScanStatus.SCANNING

    def found(self, block_index: int, lower: int, upper: int):
        self.search_cursor = block_index
        self.lower_bound = lower
        self.upper_bound = upper
        self.status = ScanStatus.FOUND_BLOCK

    def narrow(self, lower: int, upper: int):
        if lower < self.lower_bound or upper > self.upper_bound or lower >= upper:
            raise ImageIOError(
                f"refinement must shrink [{self.lower_bound}, {self.upper_bound})"
                f", got [{lower}, {upper})",
                operation="refine",
                offset=lower,
                length=upper - lower,
            )
        self.lower_bound = lower
        self.upper_bound = upper


@dataclass
class BoundaryResult:
    status: str
    block_index: int
    block_size: int
    size_bytes: int
    strategy: str
    sector: Optional[int] = None
    first_pad_sector: Optional[int] = None    # None → boundary is at EOF
    exact_offset: Optional[int] = None
    refine_steps: int = 0
    reads: int = 0
    elapsed: float = field(default=0.0, compare=False)

    @property
    def block_offset(self) -> int:
        return self.block_index * self.block_size

    @property
    def is_refined(self) -> bool:
        return self.status == ScanStatus.REFINED

    @property
    def sector_offset(self) -> Optional[int]:
        if self.sector is None:
            return None
        return self.sector * SECTOR_SIZE

    @property
    def at_eof(self) -> bool:
        return self.sector is not None and self.first_pad_sector is None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "strategy": self.strategy,
            "block_size": self.block_size,
            "size_bytes": self.size_bytes,
            "block_index": self.block_index,
            "block_offset": self.block_offset,
            "sector": self.sector,
            "sector_offset": self.sector_offset,
            "first_pad_sector": (
                "EOF" if self.at_eof else self.first_pad_sector),
            "exact_offset": self.exact_offset,
            "refine_steps": self.refine_steps,
            "reads": self.reads,
            "elapsed": round(self.elapsed, 3),
        }


# ─────────────────────────────────────────────────────────────
#  Lazy backward sequences
# ─────────────────────────────────────────────────────────────

def _tracked(state: ScanState, pairs: Iterator[tuple]) -> Iterator[tuple]:
    """Pass items through, moving the search cursor to each item's index."""
    for item in pairs:
        state.search_cursor = item[0]
        if item[0] % _PROGRESS_EVERY == 0:
            logger.debug("Checking block %d...", item[0])
        yield item


def _iter_chunks_backward(
    reader: DiskReader,
    block_size: int,
    chunk_blocks: int,
    start: int,
) -> Iterator[tuple[int, int, bytes]]:
    """
    Yield (last_block, first_block, data) for chunks from `start` down to 0.

    Chunk k spans blocks [k*chunk_blocks, (k+1)*chunk_blocks); the first
    chunk is cut at `start`.
    """
    last = start
    while last >= 0:
        first = (last // chunk_blocks) * chunk_blocks
        lo = first * block_size
        hi = min((last + 1) * block_size, reader.size)
        yield last, first, reader.read_at(lo, hi - lo)
        last = first - 1


# ─────────────────────────────────────────────────────────────
#  Scan strategies
#  Each returns the last non-pad block index in [0, state.search_cursor]
#  or None.
# ─────────────────────────────────────────────────────────────

def scan_direct(loc: "BoundaryLocator", state: ScanState) -> Optional[int]:
    blocks = loc.reader.iter_blocks_backward(
        loc.block_size, start=state.search_cursor)
    return next(
        (i for i, data in _tracked(state, blocks) if loc.pad.has_data(data)),
        None,
    )


def scan_windowed(loc: "BoundaryLocator", state: ScanState) -> Optional[int]:
    chunks = _iter_chunks_backward(
        loc.reader, loc.block_size, loc.chunk_blocks, state.search_cursor)
    for last, first, data in _tracked(state, chunks):
        if not loc.pad.has_data(data):
            continue
        # Hit: descend to per-block tests inside this chunk
        blocks = loc.reader.iter_blocks_backward(
            loc.block_size, start=last, stop=first)
        hit = next(
            (i for i, b in _tracked(state, blocks) if loc.pad.has_data(b)),
            None,
        )
        if hit is None:
            raise ImageIOError(
                "Chunk had data but none of its blocks did "
                "(image changed during scan?)",
                operation="scan_windowed",
                offset=first * loc.block_size,
                length=len(data),
            )
        return hit
    return None


def scan_pattern(loc: "BoundaryLocator", state: ScanState) -> Optional[int]:
    chunks = _iter_chunks_backward(
        loc.reader, loc.block_size, loc.chunk_blocks, state.search_cursor)
    for last, first, data in _tracked(state, chunks):
        rel = loc.matcher.rightmost(data, loc.pad)
        if rel is not None:
            offset = first * loc.block_size + rel
            logger.debug("Pattern hit: last non-pad byte at %d", offset)
            return offset // loc.block_size
    return None


STRATEGIES: dict[str, Callable] = {
    "direct": scan_direct,
    "windowed": scan_windowed,
    "pattern": scan_pattern,
}


# ─────────────────────────────────────────────────────────────
#  Refinement
# ─────────────────────────────────────────────────────────────

def quarter_range(
    bounds: tuple[int, int],
    test: Callable[[int, int], bool],
) -> Optional[tuple[int, int]]:
    """
    Split [lower, upper) into 4 segments and return the rightmost one for
    which test(start, end) holds, or None if no segment holds.
    """
    lower, upper = bounds
    seg = ceil_div(upper - lower, 4)
    for start in reversed(range(lower, upper, seg)):
        end = min(start + seg, upper)
        if test(start, end):
            return start, end
    return None


class BoundaryLocator:
    """
    Last-non-pad boundary search over one image.

    Configuration is fixed at construction; every locate() call owns a
    fresh ScanState, so one locator can be reused for repeated scans.
    """

    def __init__(
        self,
        reader: DiskReader,
        pad: Optional[PadSpec] = None,
        block_size: int = DEFAULT_BLOCK_SIZE,
        strategy: str = "direct",
        chunk_size: Optional[int] = None,
        refine: bool = True,
        exact: bool = False,
        matcher: Optional[str] = None,
    ):
        if block_size <= 0:
            raise ConfigurationError(
                f"block size must be positive, got {block_size}",
                operation="locate")
        if reader.size <= 0:
            raise ConfigurationError("Image is empty", operation="locate")
        if strategy not in STRATEGIES:
            raise ConfigurationError(
                f"Unknown scan strategy {strategy!r} "
                f"(choose from {', '.join(STRATEGIES)})",
                operation="locate")
        if chunk_size is None:
            chunk_size = max(DEFAULT_CHUNK_SIZE, block_size)
        if exact and not refine:
            raise ConfigurationError(
                "exact mode needs refinement (refine=False given)",
                operation="locate")
        if chunk_size < block_size:
            raise ConfigurationError(
                f"chunk size ({chunk_size}) must be >= block size ({block_size})",
                operation="locate")

        self.reader = reader
        self.pad = pad or DEFAULT_PAD
        self.block_size = block_size
        self.strategy = strategy
        self.chunk_size = chunk_size
        self.chunk_blocks = chunk_size // block_size
        self.refine = refine
        self.exact = exact
        self.matcher: Optional[BytePatternMatcher] = None
        if strategy == "pattern" or exact:
            self.matcher = select_matcher(matcher)

    @property
    def total_blocks(self) -> int:
        return self.reader.total_blocks(self.block_size)

    def _test(self, start: int, end: int) -> bool:
        return self.pad.has_data(self.reader.read_at(start, end - start))

    def locate(self, start_block: Optional[int] = None) -> BoundaryResult:
        """
        Scan blocks [0, start_block] backward for the last non-pad data.

        Raises NotFoundError when the scanned range is pad-only.
        """
        total = self.total_blocks
        if start_block is None:
            start_block = total - 1
        if not 0 <= start_block < total:
            raise ConfigurationError(
                f"start block {start_block} outside [0, {total})",
                operation="locate")

        state = ScanState(search_cursor=start_block)
        reads_before = self.reader.reads
        t0 = time.time()

        logger.info(
            "Boundary scan: %s, %d blocks of %s, pad=%s, strategy=%s",
            human_size(self.reader.size), total, human_size(self.block_size),
            self.pad.label(), self.strategy,
        )

        index = STRATEGIES[self.strategy](self, state)
        if index is None:
            state.status = ScanStatus.NOT_FOUND
            raise NotFoundError(
                f"No non-pad ({self.pad.label()}) data in blocks 0..{start_block}",
                state=state,
                operation="locate",
                offset=0,
                length=min((start_block + 1) * self.block_size, self.reader.size),
            )

        lower, length = self.reader.block_span(index, self.block_size)
        state.found(index, lower, lower + length)
        logger.info(
            "Last non-pad block: %d (offset %d)", index, lower)

        result = BoundaryResult(
            status=state.status,
            block_index=index,
            block_size=self.block_size,
            size_bytes=self.reader.size,
            strategy=self.strategy,
        )
        if self.refine:
            self._refine(state, result)

        result.status = state.status
        result.reads = self.reader.reads - reads_before
        result.elapsed = time.time() - t0
        return result

    def _refine(self, state: ScanState, result: BoundaryResult):
        state.status = ScanStatus.REFINING
        steps = 0
        while state.upper_bound - state.lower_bound >= SECTOR_SIZE:
            narrowed = quarter_range(
                (state.lower_bound, state.upper_bound), self._test)
            if narrowed is None:
                raise ImageIOError(
                    "Refinement lost the non-pad data "
                    "(image changed during scan?)",
                    operation="refine",
                    offset=state.lower_bound,
                    length=state.upper_bound - state.lower_bound,
                )
            state.narrow(*narrowed)
            steps += 1
            logger.debug(
                "Refine step %d: [%d, %d)", steps,
                state.lower_bound, state.upper_bound)

        lo, hi = state.lower_bound, state.upper_bound
        sector = None
        for base in range(align_down(hi - 1), align_down(lo) - 1, -SECTOR_SIZE):
            start = max(base, lo)
            end = min(base + SECTOR_SIZE, hi)
            if self._test(start, end):
                sector = base // SECTOR_SIZE
                state.narrow(start, end)
                break
        if sector is None:
            raise ImageIOError(
                "No non-pad sector in refined range",
                operation="refine", offset=lo, length=hi - lo)

        result.sector = sector
        result.refine_steps = steps
        next_sector = sector + 1
        if next_sector * SECTOR_SIZE < self.reader.size:
            result.first_pad_sector = next_sector

        if self.exact:
            start = state.lower_bound
            data = self.reader.read_at(start, state.upper_bound - start)
            rel = self.matcher.rightmost(data, self.pad)
            if rel is not None:
                result.exact_offset = start + rel

        state.status = ScanStatus.REFINED
        logger.info(
            "Refined: last non-pad sector %d (offset %d), first pad sector %s%s",
            sector, sector * SECTOR_SIZE,
            result.first_pad_sector if result.first_pad_sector is not None else "EOF",
            f", last byte at {result.exact_offset}"
            if result.exact_offset is not None else "",
        )


def find_boundary(
    path: str,
    pad: Optional[PadSpec] = None,
    block_size: int = DEFAULT_BLOCK_SIZE,
    strategy: str = "direct",
    chunk_size: Optional[int] = None,
    start_block: Optional[int] = None,
    refine: bool = True,
    exact: bool = False,
    matcher: Optional[str] = None,
) -> BoundaryResult:
    """Open `path` read-only and locate its data boundary."""
    with DiskReader.open(path) as reader:
        locator = BoundaryLocator(
            reader, pad=pad, block_size=block_size, strategy=strategy,
            chunk_size=chunk_size, refine=refine, exact=exact, matcher=matcher,
        )
        return locator.locate(start_block=start_block)
