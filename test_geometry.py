"""Geometry Resolver, pad classifier and pattern matcher tests."""
import random

import pytest

from flashscan.errors import ConfigurationError
from flashscan.geometry import (
    GiB, MiB, PROFILES, closest_profile, human_size, parse_candidates,
    parse_size, resolve_geometry,
)
from flashscan.padding import (
    MATCHERS, PadSpec, RegexMatcher, StripMatcher, select_matcher,
)


def test_closest_profile():
    assert closest_profile(64 * GiB).name == "64g"
    assert closest_profile(62 * GiB).name == "64g"
    assert closest_profile(100 * MiB).name == "1g"
    assert closest_profile(5 * GiB).name == "4g"
    # 6 GiB sits between 4g and 8g: tie goes to the smaller profile
    assert closest_profile(6 * GiB).name == "4g"
    assert closest_profile(2 * 1024 * GiB).name == "256g"


def test_profile_defaults_and_overrides():
    geo = resolve_geometry(64 * GiB)
    assert geo.profile == "64g"
    assert geo.block_size == 8 * MiB
    assert geo.total_blocks == 8192
    assert geo.sample_blocks == 1536
    assert geo.tail_blocks == 32
    assert geo.candidates == [8 * GiB, 16 * GiB, 32 * GiB, 40 * GiB, 48 * GiB]

    geo = resolve_geometry(64 * GiB, profile="8g", block_size=16 * MiB,
                           candidates=[3 * GiB])
    assert geo.profile == "8g"
    assert geo.block_size == 16 * MiB
    assert geo.sample_size == PROFILES["8g"].sample_size
    assert geo.candidates == [3 * GiB]


def test_derived_counts_are_clamped():
    geo = resolve_geometry(10 * MiB + 1, block_size=1 * MiB,
                           sample_size=64 * MiB, tail_size=100, candidates=[])
    assert geo.total_blocks == 11
    assert geo.sample_blocks == 11
    assert geo.sample_bytes == 10 * MiB + 1
    assert geo.tail_blocks == 1
    assert geo.tail_start_block == 10


def test_geometry_errors():
    with pytest.raises(ConfigurationError):
        resolve_geometry(0)
    with pytest.raises(ConfigurationError):
        resolve_geometry(GiB, block_size=0)
    with pytest.raises(ConfigurationError):
        resolve_geometry(GiB, profile="3g")
    with pytest.raises(ConfigurationError):
        resolve_geometry(GiB, candidates=[MiB, -5])


def test_parse_size_and_candidates():
    assert parse_size("4096") == 4096
    assert parse_size("8M") == 8 * MiB
    assert parse_size("12GiB") == 12 * GiB
    assert parse_size("0.5g") == GiB // 2
    assert parse_candidates("8G, 16G,32768M") == [8 * GiB, 16 * GiB, 32 * GiB]
    for bad in ("", "8G,,16G", "abc", "12X", "8G,0"):
        with pytest.raises(ConfigurationError):
            parse_candidates(bad)
    assert human_size(8 * MiB) == "8.0 MiB"
    assert human_size(100) == "100 B"


def test_pad_spec_has_data():
    ff = PadSpec.parse("ff")
    both = PadSpec.parse("0xFF,00")
    assert both.values == frozenset({0xFF, 0x00})
    assert both.label() == "00,FF"

    assert not ff.has_data(b"")
    assert not ff.has_data(b"\xff" * 4096)
    assert ff.has_data(b"\xff" * 4095 + b"\x01")
    assert ff.has_data(b"\xff" * 2000 + b"\x00" + b"\xff" * 2000)
    assert ff.has_data(b"\x00" * 4096)
    assert not both.has_data(b"\x00\xff" * 3000)
    assert both.has_data(b"\x00\xff" * 1000 + b"\x7f" + b"\xff" * 1000)

    for bad in ("", "zz", "ff,,00", "1ff"):
        with pytest.raises(ConfigurationError):
            PadSpec.parse(bad)


def test_matchers_agree():
    rnd = random.Random(3)
    pads = [PadSpec.parse("ff"), PadSpec.parse("00"), PadSpec.parse("ff,00")]
    for _ in range(200):
        pad = rnd.choice(pads)
        fill = pad.fill(rnd.randint(0, 3000))
        buf = bytearray(fill)
        expected = None
        for _ in range(rnd.randint(0, 3)):
            if not buf:
                break
            pos = rnd.randrange(len(buf))
            buf[pos] = 0x5A
            expected = pos if expected is None else max(expected, pos)
        data = bytes(buf)
        assert StripMatcher().rightmost(data, pad) == expected
        assert RegexMatcher().rightmost(data, pad) == expected


def test_regex_matcher_special_pad_bytes():
    # Bytes that are regex metacharacters must still work as pad values
    pad = PadSpec.of([ord("]"), ord("^"), ord("-"), ord("\\")])
    data = b"]^-\\x]]^^--"
    assert RegexMatcher().rightmost(data, pad) == 4
    assert StripMatcher().rightmost(data, pad) == 4


def test_select_matcher():
    assert select_matcher().name == MATCHERS[0].name
    assert select_matcher("regex").name == "regex"
    with pytest.raises(ConfigurationError):
        select_matcher("simd")
