"""
Alias Detector tests: duplicate blocks, tail-vs-candidate comparison,
classification tiers, hash backends and the duplicate dump side output.
"""
import os
import random
import shutil
import tempfile

import pytest

from flashscan.alias import (
    MatchResult, SignalTier, classify, detect_aliasing, dump_duplicates,
    find_duplicates, hexdump, peek_tail, strong_threshold,
)
from flashscan.errors import AmbiguousSignalError, ConfigurationError
from flashscan.geometry import resolve_geometry
from flashscan.hashing import HAS_BLAKE3, select_hasher
from flashscan.imagegen import generate_image
from flashscan.mmap_reader import DiskReader

BS = 4096
BLOCKS = 64
SIZE = BS * BLOCKS            # tail window: blocks 56..63
TAIL = 8 * BS


def random_image(seed=1):
    return bytearray(random.Random(seed).randbytes(SIZE))


def write(path, data):
    with open(path, "wb") as f:
        f.write(data)
    return path


def geometry(size=SIZE, candidates=(), sample=16 * BS):
    return resolve_geometry(size, block_size=BS, sample_size=sample,
                            tail_size=TAIL, candidates=list(candidates))


def test_tail_copied_earlier_is_strong():
    """Tail content copied C bytes earlier → hits == T for C, STRONG."""
    tmpdir = tempfile.mkdtemp(prefix="test_alias_")
    try:
        data = random_image()
        tail_start = SIZE - TAIL
        c = 32 * BS
        data[tail_start - c:tail_start - c + TAIL] = data[tail_start:]
        path = write(os.path.join(tmpdir, "wrap.img"), data)

        cands = [16 * BS, c, 48 * BS, 300000, 4 * BS]
        with DiskReader.open(path) as reader:
            report = detect_aliasing(reader, geometry(candidates=cands),
                                     hasher=select_hasher("sha256"))

        by_cand = {m.candidate: m for m in report.matches}
        assert [m.candidate for m in report.matches] == cands
        assert by_cand[c].hits == 8 and by_cand[c].total == 8
        assert by_cand[c].window_offset == tail_start - c
        assert by_cand[16 * BS].hits == 0
        assert by_cand[48 * BS].hits == 0
        assert "before byte 0" in by_cand[300000].skipped_reason
        assert "overlap" in by_cand[4 * BS].skipped_reason
        assert report.best.candidate == c
        assert report.tier == SignalTier.STRONG
        assert report.threshold == 4
        assert report.duplicates == []
        assert report.hasher == "sha256"
        report.raise_for_signal()
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_tie_goes_to_first_listed_candidate():
    tmpdir = tempfile.mkdtemp(prefix="test_alias_")
    try:
        period = 16 * BS
        base = random.Random(3).randbytes(period)
        path = write(os.path.join(tmpdir, "periodic.img"),
                     base * (SIZE // period))
        for order in ([2 * period, period], [period, 2 * period]):
            with DiskReader.open(path) as reader:
                report = detect_aliasing(
                    reader, geometry(candidates=order, sample=BS), peek=False)
            assert all(m.hits == 8 for m in report.matches)
            assert report.best.candidate == order[0]
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_duplicate_blocks_grouped():
    """Two identical blocks in the sample region → one group with both indices."""
    tmpdir = tempfile.mkdtemp(prefix="test_alias_")
    try:
        data = random_image(seed=5)
        data[10 * BS:11 * BS] = data[3 * BS:4 * BS]
        data[12 * BS:14 * BS] = b"\xff" * (2 * BS)
        path = write(os.path.join(tmpdir, "dup.img"), data)

        with DiskReader.open(path) as reader:
            report = detect_aliasing(reader, geometry(candidates=[32 * BS]))
            assert len(report.duplicates) == 2
            real, pad = report.duplicates
            assert real.indices == [3, 10] and not real.pad_only
            assert pad.indices == [12, 13] and pad.pad_only

            dumped = dump_duplicates(reader, report.duplicates, BS,
                                     os.path.join(tmpdir, "dumps"))
        assert len(dumped) == 2
        with open(dumped[0], "rb") as f:
            assert f.read() == bytes(data[3 * BS:4 * BS])
        assert os.path.basename(dumped[0]).startswith("dup_00000003_")
        assert sorted(os.listdir(os.path.join(tmpdir, "dumps"))) == sorted(
            os.path.basename(p) for p in dumped)
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_find_duplicates_order_and_singletons():
    hashes = {0: "a", 1: "b", 2: "a", 3: "c", 4: "b", 5: "a"}
    groups = find_duplicates(hashes)
    assert [(g.digest, g.indices) for g in groups] == [
        ("a", [0, 2, 5]), ("b", [1, 4])]
    assert find_duplicates({0: "x", 1: "y"}) == []


def test_classify_tiers():
    def best(h):
        return MatchResult(candidate=1, hits=h, total=8)

    assert classify(best(8), 8) == SignalTier.STRONG
    assert classify(best(4), 8) == SignalTier.STRONG
    assert classify(best(3), 8) == SignalTier.WEAK
    assert classify(best(0), 8) == SignalTier.NONE
    assert classify(None, 8) == SignalTier.NONE
    # ceil(7 / 2) == 4
    assert strong_threshold(7) == 4
    assert classify(best(3), 7) == SignalTier.WEAK
    # Configurable threshold
    assert classify(best(3), 8, strong_ratio=0.25) == SignalTier.STRONG
    with pytest.raises(ConfigurationError):
        strong_threshold(8, strong_ratio=0)


def test_no_signal_and_raise_for_signal():
    tmpdir = tempfile.mkdtemp(prefix="test_alias_")
    try:
        path = write(os.path.join(tmpdir, "genuine.img"), random_image(seed=9))
        with DiskReader.open(path) as reader:
            report = detect_aliasing(reader, geometry(candidates=[16 * BS, 32 * BS]))
        assert report.tier == SignalTier.NONE
        assert report.best.candidate == 16 * BS
        assert report.best.hits == 0
        with pytest.raises(AmbiguousSignalError) as exc:
            report.raise_for_signal()
        assert exc.value.report is report
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_repeat_run_same_match_table():
    tmpdir = tempfile.mkdtemp(prefix="test_alias_")
    try:
        gen = generate_image(os.path.join(tmpdir, "a.img"), SIZE, mode="alias",
                             seed=11, real_bytes=16 * BS)
        runs = []
        for _ in range(2):
            with DiskReader.open(gen.path) as reader:
                runs.append(detect_aliasing(
                    reader, geometry(candidates=[16 * BS, 20 * BS, 32 * BS])))
        assert runs[0].matches == runs[1].matches
        assert runs[0].to_dict() == runs[1].to_dict()
        hits = [m.hits for m in runs[0].matches]
        assert hits == [8, 0, 8]
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_generated_alias_image():
    """Wrapped image: the real capacity candidate matches, duplicates show up."""
    tmpdir = tempfile.mkdtemp(prefix="test_alias_")
    try:
        mib = 1024 * 1024
        gen = generate_image(os.path.join(tmpdir, "fake.img"), 4 * mib,
                             mode="alias", seed=2, real_bytes=1 * mib)
        with DiskReader.open(gen.path) as reader:
            geo = resolve_geometry(reader.size, block_size=64 * 1024,
                                   sample_size=2 * mib, tail_size=256 * 1024,
                                   candidates=[1 * mib, mib + mib // 2])
            report = detect_aliasing(reader, geo)
        assert geo.tail_blocks == 4
        assert [m.hits for m in report.matches] == [4, 0]
        assert report.tier == SignalTier.STRONG
        # Blocks 16..31 repeat blocks 0..15
        assert len(report.duplicates) == 16
        assert report.duplicates[0].indices == [0, 16]
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_short_last_block_still_matches():
    """Tail window with a short final block compares equal-length pieces."""
    tmpdir = tempfile.mkdtemp(prefix="test_alias_")
    try:
        size = SIZE + 1000
        gen = generate_image(os.path.join(tmpdir, "short.img"), size,
                             mode="alias", seed=4, real_bytes=16 * BS)
        with DiskReader.open(gen.path) as reader:
            geo = geometry(size=size, candidates=[16 * BS])
            report = detect_aliasing(reader, geo)
        assert geo.total_blocks == BLOCKS + 1
        assert report.matches[0].hits == geo.tail_blocks
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.mark.skipif(not HAS_BLAKE3, reason="blake3 not installed")
def test_hash_backends_agree():
    tmpdir = tempfile.mkdtemp(prefix="test_alias_")
    try:
        gen = generate_image(os.path.join(tmpdir, "b.img"), SIZE, mode="alias",
                             seed=8, real_bytes=16 * BS)
        tables = {}
        for name in ("blake3", "sha256"):
            with DiskReader.open(gen.path) as reader:
                report = detect_aliasing(
                    reader, geometry(candidates=[16 * BS, 24 * BS]),
                    hasher=select_hasher(name))
            assert report.hasher == name
            tables[name] = [(m.candidate, m.hits) for m in report.matches]
        assert tables["blake3"] == tables["sha256"]
        assert select_hasher().name == "blake3"
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_select_hasher_errors():
    with pytest.raises(ConfigurationError):
        select_hasher("md4")
    assert select_hasher("sha256").name == "sha256"


def test_peek_tail():
    tmpdir = tempfile.mkdtemp(prefix="test_alias_")
    try:
        data = b"\x00" * 100 + b"\xff" * (2 * 1024 * 1024)
        path = write(os.path.join(tmpdir, "p.img"), data)
        with DiskReader.open(path) as reader:
            peek = peek_tail(reader)
        assert peek == b"\xff" * 256
        small = write(os.path.join(tmpdir, "small.img"), b"abc" * 10)
        with DiskReader.open(small) as reader:
            assert peek_tail(reader) == b"abc" * 10
        assert hexdump(b"AB\x00", base=16) == "00000010: 41 42 00" + " " * 39 + "  AB."
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)
