"""Synthetic image generator: each mode's reported boundary matches the locator."""
import os
import shutil
import tempfile

import pytest

from flashscan.boundary import find_boundary
from flashscan.errors import ConfigurationError, NotFoundError
from flashscan.imagegen import DataSource, generate_image, parse_fill_ranges
from flashscan.padding import PadSpec

MIB = 1024 * 1024


def _boundary(gen, pad=0xFF):
    return find_boundary(gen.path, pad=PadSpec.of([pad]), block_size=64 * 1024,
                         exact=True)


def test_modes_match_locator():
    tmpdir = tempfile.mkdtemp(prefix="test_gen_")
    try:
        def gen(name, size, **kw):
            kw.setdefault("data", "pattern")
            return generate_image(os.path.join(tmpdir, name), size, **kw)

        g = gen("partial.img", MIB, mode="partial", data_bytes=5000)
        assert g.last_data_sector == 9
        r = _boundary(g)
        assert r.sector == 9 and r.exact_offset == 4999

        g = gen("full.img", 100000, mode="full")
        assert g.last_data_sector == 195
        r = _boundary(g)
        assert r.sector == 195 and r.at_eof

        g = gen("weird.img", MIB, mode="weird", percent=50, partial_bytes=10,
                fill_before=4)
        assert g.last_data_sector == 512
        r = _boundary(g)
        assert r.sector == 512
        assert r.exact_offset == 512 * 512 + 9
        assert r.first_pad_sector == 513

        g = gen("weird00.img", MIB, mode="weird", pad=0x00, percent=25,
                partial_bytes=3)
        r = _boundary(g, pad=0x00)
        assert r.sector == g.last_data_sector == 256

        g = gen("range.img", MIB, mode="range", fill_ranges="10-20,100,50:60")
        assert g.last_data_sector == 100
        r = _boundary(g)
        assert r.sector == 100 and r.first_pad_sector == 101
        assert g.last_data_offset == 100 * 512

        g = gen("alias.img", 2 * MIB, mode="alias", real_bytes=MIB)
        assert g.last_data_sector == 2 * MIB // 512 - 1
        with open(g.path, "rb") as f:
            blob = f.read()
        assert blob[:MIB] == blob[MIB:]

        g = gen("empty.img", MIB, mode="empty")
        assert g.last_data_sector is None and g.last_data_offset is None
        with pytest.raises(NotFoundError):
            _boundary(g)
        print("  ✅ generator modes vs locator: PASS")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_seeded_data_is_reproducible():
    tmpdir = tempfile.mkdtemp(prefix="test_gen_")
    try:
        paths = []
        for name in ("a.img", "b.img"):
            g = generate_image(os.path.join(tmpdir, name), 300000, mode="partial",
                               data="seeded", seed=5, data_bytes=200000)
            paths.append(g.path)
        blobs = []
        for p in paths:
            with open(p, "rb") as f:
                blobs.append(f.read())
        assert blobs[0] == blobs[1]
        assert blobs[0][200000:] == b"\xff" * 100000
        assert DataSource("seeded", 1).take(64) == DataSource("seeded", 1).take(64)
        assert DataSource("pattern").take(5) == b"\xaa\x55\xaa\x55\xaa"
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_parse_fill_ranges():
    assert parse_fill_ranges("23423-23555,30000,40010:40000") == [
        (23423, 23555), (30000, 30000), (40000, 40010)]
    assert parse_fill_ranges(" 7 ") == [(7, 7)]
    for bad in ("", "a-b", "1-2-3", "5,,6"):
        with pytest.raises(ConfigurationError):
            parse_fill_ranges(bad)


def test_generator_rejects_bad_options():
    tmpdir = tempfile.mkdtemp(prefix="test_gen_")
    try:
        path = os.path.join(tmpdir, "x.img")
        with pytest.raises(ConfigurationError):
            generate_image(path, MIB, mode="sparse")
        with pytest.raises(ConfigurationError):
            generate_image(path, 0, mode="empty")
        with pytest.raises(ConfigurationError):
            generate_image(path, MIB, mode="partial")
        with pytest.raises(ConfigurationError):
            generate_image(path, MIB, mode="alias")
        with pytest.raises(ConfigurationError):
            generate_image(path, MIB, mode="weird", percent=150)
        with pytest.raises(ConfigurationError):
            generate_image(path, MIB, mode="full", data="zeros")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_alias_wrap_streams_large_real_capacity():
    """Real capacity above the write chunk and not a multiple of it."""
    tmpdir = tempfile.mkdtemp(prefix="test_gen_")
    try:
        real = MIB + 12345
        size = 3 * MIB + 1000
        g = generate_image(os.path.join(tmpdir, "wrap.img"), size, mode="alias",
                           data="seeded", seed=3, real_bytes=real)
        assert g.last_data_sector == (size + 511) // 512 - 1
        with open(g.path, "rb") as f:
            blob = f.read()
        assert len(blob) == size
        # Every byte past the real capacity repeats the byte `real` earlier
        assert blob[real:] == blob[:size - real]
        assert blob[:real] != b"\xff" * real
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)
