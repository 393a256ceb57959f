"""
Pad Classifier — "is this range all filler?" and "where is the last real byte?"

Flash controllers fill unwritten space with 0xFF (erased NAND) or 0x00
(zeroed / TRIM'd). A byte range is pad-only iff every byte is in the pad set.

Two questions are answered here:
  • has_data()   — early-exit test used by block and chunk scans.
  • rightmost()  — offset of the last non-pad byte, used by the pattern
                   scan strategy and the exact-byte refinement step.

`rightmost()` is provided by interchangeable BytePatternMatcher backends,
probed once in a fixed order. Results never depend on the backend.
"""

import re
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_FILL_CACHE_MAX = 64 * 1024 * 1024


@dataclass(frozen=True)
class PadSpec:
    """Set of byte values treated as padding."""
    values: frozenset

    def __post_init__(self):
        if not self.values:
            raise ConfigurationError("Pad set must not be empty")
        for v in self.values:
            if not isinstance(v, int) or not 0 <= v <= 255:
                raise ConfigurationError(f"Pad value out of range: {v!r}")

    @classmethod
    def of(cls, values: Iterable[int]) -> "PadSpec":
        return cls(frozenset(values))

    @classmethod
    def parse(cls, text: str) -> "PadSpec":
        """'ff', '00', 'ff,00', '0xFF' → PadSpec."""
        values = []
        for part in text.replace(" ", "").split(","):
            if not part:
                raise ConfigurationError(f"Malformed pad spec: {text!r}")
            try:
                v = int(part, 16)
            except ValueError:
                raise ConfigurationError(
                    f"Pad byte must be hex: {part!r}") from None
            values.append(v)
        return cls.of(values)

    @property
    def pad_bytes(self) -> bytes:
        return bytes(sorted(self.values))

    @property
    def single(self) -> Optional[int]:
        if len(self.values) == 1:
            return next(iter(self.values))
        return None

    def label(self) -> str:
        return ",".join(f"{v:02X}" for v in sorted(self.values))

    def fill(self, length: int) -> bytes:
        """All-pad buffer of `length` bytes (lowest pad value)."""
        return bytes([min(self.values)]) * length

    def has_data(self, data: bytes) -> bool:
        """
        True if `data` holds at least one non-pad byte.

        Cheap rejections first (first/last byte, 8 evenly-spaced samples),
        then a full C-level comparison. Most data blocks exit on the first
        probe; full comparisons only happen on (nearly) pad-only blocks.
        """
        length = len(data)
        if length == 0:
            return False

        values = self.values
        if data[0] not in values or data[-1] not in values:
            return True

        step = max(1, length // 8)
        for i in range(0, length, step):
            if data[i] not in values:
                return True

        single = self.single
        if single is not None:
            return data != _fill(single, length)
        return len(data.rstrip(self.pad_bytes)) != 0

    def is_pad(self, data: bytes) -> bool:
        return not self.has_data(data)


_fills: dict[tuple[int, int], bytes] = {}


def _fill(value: int, length: int) -> bytes:
    """Precomputed pad block for fast equality checks."""
    if length > _FILL_CACHE_MAX:
        return bytes([value]) * length
    key = (value, length)
    buf = _fills.get(key)
    if buf is None:
        if len(_fills) > 32:
            _fills.clear()
        buf = _fills[key] = bytes([value]) * length
    return buf


# ─────────────────────────────────────────────────────────────
#  BytePatternMatcher backends
# ─────────────────────────────────────────────────────────────

class BytePatternMatcher:
    """Locate the rightmost non-pad byte in a buffer."""

    name = "base"

    @classmethod
    def available(cls) -> bool:
        return True

    def rightmost(self, data: bytes, pad: PadSpec) -> Optional[int]:
        raise NotImplementedError


class StripMatcher(BytePatternMatcher):
    """bytes.rstrip() walks from the end in C and stops at the first non-pad."""

    name = "strip"

    def rightmost(self, data: bytes, pad: PadSpec) -> Optional[int]:
        n = len(data.rstrip(pad.pad_bytes))
        return n - 1 if n else None


class RegexMatcher(BytePatternMatcher):
    """
    Compiled byte regex: a non-pad byte followed only by pad up to the end.

    Each attempt consumes at most one pad run before failing, so a search
    is linear in the buffer length.
    """

    name = "regex"

    def __init__(self):
        self._patterns: dict[frozenset, re.Pattern] = {}

    def _pattern(self, pad: PadSpec) -> re.Pattern:
        pat = self._patterns.get(pad.values)
        if pat is None:
            cls = b"".join(re.escape(bytes([v])) for v in sorted(pad.values))
            pat = re.compile(b"[^" + cls + b"][" + cls + b"]*\\Z", re.DOTALL)
            self._patterns[pad.values] = pat
        return pat

    def rightmost(self, data: bytes, pad: PadSpec) -> Optional[int]:
        m = self._pattern(pad).search(data)
        return m.start() if m else None


# Probe order: first available wins
MATCHERS: tuple[type, ...] = (StripMatcher, RegexMatcher)


def select_matcher(name: Optional[str] = None) -> BytePatternMatcher:
    """
    Pick a matcher backend.

    With a name, that backend must exist and be available; otherwise the
    first available backend in MATCHERS is used.
    """
    if name:
        for cls in MATCHERS:
            if cls.name == name:
                if not cls.available():
                    raise ConfigurationError(
                        f"Pattern matcher {name!r} is not available",
                        operation="select_matcher")
                return cls()
        raise ConfigurationError(
            f"Unknown pattern matcher {name!r} "
            f"(choose from {', '.join(c.name for c in MATCHERS)})",
            operation="select_matcher")

    for cls in MATCHERS:
        if cls.available():
            logger.debug("Pattern matcher: %s", cls.name)
            return cls()
    raise ConfigurationError(
        "No byte pattern matcher available", operation="select_matcher")
