#!/usr/bin/env python3
"""
flashscan — Fake-capacity flash image analysis (read-only).

Usage:
    python main.py boundary image.dd                 # last real data sector
    python main.py boundary image.dd --strategy pattern --exact
    python main.py alias image.dd                    # wrap/alias detection
    python main.py alias image.dd --profile 64g --candidates 8G,16G
    python main.py generate fake2g.dd --mode weird --profile 2g

Exit status: 0 success, 1 no boundary found, 2 configuration / I/O error.
"""

APP_VERSION = "0.3.0"

import sys
import json
import logging
import argparse

EXIT_OK = 0
EXIT_NOT_FOUND = 1
EXIT_ERROR = 2

logger = logging.getLogger("flashscan")


def _banner(title: str):
    print()
    print("=" * 60)
    print(f"  {title}")
    print("=" * 60)


def _write_json(path: str, payload: dict):
    with open(path, "w") as f:
        json.dump(payload, f, indent=2, default=str)
    print(f"  Report: {path}")


def boundary_mode(args) -> int:
    from flashscan.boundary import BoundaryLocator
    from flashscan.errors import NotFoundError
    from flashscan.extract import (
        extract_boundary_pair, extract_last_sector, extract_trimmed,
    )
    from flashscan.geometry import get_profile, human_size, parse_size
    from flashscan.mmap_reader import DiskReader
    from flashscan.padding import PadSpec

    pad = PadSpec.parse(args.pad)
    wants_extract = (args.extract_trimmed or args.extract_last_sector
                     or args.extract_pair)

    with DiskReader.open(args.image) as reader:
        if args.block_size:
            block_size = parse_size(args.block_size)
        elif args.profile:
            block_size = get_profile(args.profile).block_size
        else:
            block_size = parse_size("1M")
        chunk_size = parse_size(args.chunk_size) if args.chunk_size else None

        _banner(f"flashscan v{APP_VERSION} — boundary scan")
        print(f"  Image:      {args.image}")
        print(f"  Size:       {human_size(reader.size)}  ({reader.size} bytes)")
        print(f"  Sectors:    {reader.size // 512}  (last LBA: {reader.size // 512 - 1})")
        print(f"  Block size: {human_size(block_size)}")
        print(f"  Pad bytes:  {pad.label()}")
        print(f"  Strategy:   {args.strategy}")
        print(f"  I/O:        {'mmap' if reader.is_mmap else 'buffered reads'}")

        locator = BoundaryLocator(
            reader, pad=pad, block_size=block_size, strategy=args.strategy,
            chunk_size=chunk_size,
            refine=not args.no_refine or bool(wants_extract) or args.exact,
            exact=args.exact, matcher=args.matcher,
        )
        try:
            result = locator.locate(start_block=args.start_block)
        except NotFoundError as e:
            _banner("RESULT")
            print(f"  No non-pad data found: {e}")
            if args.json:
                _write_json(args.json, {"status": "NOT_FOUND", "error": str(e)})
            return EXIT_NOT_FOUND

        _banner("RESULT")
        print(f"  Last non-pad block:  {result.block_index}  "
              f"(offset {result.block_offset} bytes)")
        if result.sector is not None:
            print(f"  Last non-pad sector: {result.sector}  "
                  f"(offset {result.sector_offset} bytes)")
            fps = ("EOF" if result.first_pad_sector is None
                   else str(result.first_pad_sector))
            print(f"  First pad sector:    {fps}")
        if result.exact_offset is not None:
            print(f"  Last non-pad byte:   {result.exact_offset}")
        print(f"  Reads: {result.reads}  Refine steps: {result.refine_steps}  "
              f"Time: {result.elapsed:.2f}s")

        if args.extract_trimmed:
            extract_trimmed(reader, result, args.extract_trimmed)
            print(f"  Trimmed image:  {args.extract_trimmed}")
        if args.extract_last_sector:
            extract_last_sector(reader, result, args.extract_last_sector)
            print(f"  Last sector:    {args.extract_last_sector}")
        if args.extract_pair:
            extract_boundary_pair(reader, result, args.extract_pair)
            print(f"  Boundary pair:  {args.extract_pair}")

        if args.json:
            _write_json(args.json, result.to_dict())
    print()
    return EXIT_OK


def alias_mode(args) -> int:
    from flashscan.alias import SignalTier, detect_aliasing, hexdump
    from flashscan.geometry import (
        human_size, parse_candidates, parse_size, resolve_geometry,
    )
    from flashscan.hashing import select_hasher
    from flashscan.mmap_reader import DiskReader
    from flashscan.padding import PadSpec

    hasher = select_hasher(args.hasher)
    pad = PadSpec.parse(args.pad)

    with DiskReader.open(args.image) as reader:
        geo = resolve_geometry(
            reader.size,
            profile=args.profile,
            block_size=parse_size(args.block_size) if args.block_size else None,
            sample_size=parse_size(args.sample_size) if args.sample_size else None,
            tail_size=parse_size(args.tail_size) if args.tail_size else None,
            candidates=parse_candidates(args.candidates) if args.candidates else None,
        )

        _banner(f"flashscan v{APP_VERSION} — wrap/alias detection")
        print(f"[*] Image:        {args.image}")
        print(f"[*] Size:         {human_size(geo.size_bytes)}  ({geo.size_bytes} bytes)")
        print(f"[*] Profile:      {geo.profile}")
        print(f"[*] Block size:   {human_size(geo.block_size)}")
        print(f"[*] Total blocks: {geo.total_blocks}")
        print(f"[*] Sample:       {geo.sample_blocks} blocks ({human_size(geo.sample_bytes)})")
        print(f"[*] Tail window:  {geo.tail_blocks} blocks")
        print(f"[*] Candidates:   {', '.join(human_size(c) for c in geo.candidates)}")
        print(f"[*] Hash:         {hasher.name}")

        report = detect_aliasing(
            reader, geo, hasher=hasher, pad=pad,
            strong_ratio=args.strong_ratio, dump_dir=args.dump_duplicates,
            peek=not args.no_peek,
        )

    if report.tail_peek:
        _banner("PHASE 0 — Tail heuristic (not proof)")
        base = max(0, geo.size_bytes - 1024 * 1024)
        print(hexdump(report.tail_peek, base=base))
        print("    Note: lots of FF or 00 is suspicious, but can be normal padding.")

    _banner("PHASE 1 — Sample hashing (duplicate block detection)")
    if not report.duplicates:
        print("[*] No duplicate block hashes in the sampled region.")
    else:
        print(f"[!] Found {len(report.duplicates)} duplicate block hash(es) "
              "in the sampled region.")
        for g in report.duplicates[:5]:
            tag = "  (uniform padding)" if g.pad_only else ""
            print(f"    {g.digest[:32]}  blocks {g.indices[:8]}"
                  f"{' …' if len(g.indices) > 8 else ''}{tag}")

    _banner("PHASE 3 — Tail-alias comparison vs candidate capacities")
    for m in report.matches:
        if m.skipped:
            print(f"    {human_size(m.candidate):>12s}: skipped ({m.skipped_reason})")
        else:
            print(f"    {human_size(m.candidate):>12s}: "
                  f"{m.hits:3d}/{m.total:3d} matches ({m.match_percent:.1f}%)")

    _banner("INTERPRETATION")
    best = report.best
    if report.tier == SignalTier.STRONG:
        print("[!] STRONG wrap/alias signal.")
        print(f"    Best candidate ≈ {human_size(best.candidate)} with "
              f"{best.hits}/{best.total} matches.")
        print("    This is consistent with fake capacity / modulo mapping.")
    elif report.tier == SignalTier.WEAK:
        print("[?] Weak/ambiguous signal.")
        print(f"    Best candidate ≈ {human_size(best.candidate)} with "
              f"{best.hits}/{best.total} matches.")
        print("    This can happen with padding (all-00/all-FF) or repeated metadata.")
    else:
        print("[*] No tail-alias matches for the tested candidates.")
        print("    This does NOT prove genuine, but it did not detect the common wrap pattern.")

    if args.json:
        _write_json(args.json, report.to_dict())
    print()
    return EXIT_OK


def generate_mode(args) -> int:
    from flashscan.errors import ConfigurationError
    from flashscan.geometry import GiB, MiB, parse_size
    from flashscan.imagegen import IMAGE_PROFILES, generate_image

    if args.size:
        size = parse_size(args.size)
    elif args.fake_gib is not None:
        size = int(args.fake_gib * GiB)
    elif args.profile:
        try:
            size = IMAGE_PROFILES[args.profile.lower()]
        except KeyError:
            raise ConfigurationError(f"Unknown profile: {args.profile}") from None
    else:
        raise ConfigurationError("Missing image size (use --size, --fake-gib or --profile)")

    data_bytes = None
    if args.data_gib is not None:
        data_bytes = int(args.data_gib * GiB)
    elif args.data_mib is not None:
        data_bytes = int(args.data_mib * MiB)
    elif args.data_percent is not None:
        data_bytes = int(size * args.data_percent / 100.0)

    img = generate_image(
        args.output, size, mode=args.mode, pad=int(args.pad, 16),
        data=args.data, seed=args.seed, data_bytes=data_bytes,
        percent=args.percent, fill_before=args.fill_before,
        partial_bytes=args.partial_bytes, fill_ranges=args.fill_range,
        real_bytes=int(args.real_mib * MiB) if args.real_mib else None,
    )
    if img.last_data_sector is not None:
        print(f"Expected last data sector: {img.last_data_sector} "
              f"(offset {img.last_data_offset} bytes)")
    else:
        print("Expected last data sector: none")
    print("Done.")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Read-only analysis of flash media images: data boundary "
                    "and fake-capacity wrap detection.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Warnings only")
    parser.add_argument("--version", action="version", version=APP_VERSION)
    sub = parser.add_subparsers(dest="command", required=True)

    b = sub.add_parser("boundary", help="Find the last non-pad block/sector")
    b.add_argument("image")
    b.add_argument("--block-size", default="", help="e.g. 1M (default 1M or profile)")
    b.add_argument("--profile", default="", help="Take the block size from a profile")
    b.add_argument("--pad", default="ff", help="Pad bytes, e.g. ff or ff,00")
    b.add_argument("--strategy", default="direct",
                   choices=("direct", "windowed", "pattern"))
    b.add_argument("--chunk-size", default="", help="Chunk size for windowed/pattern")
    b.add_argument("--start-block", type=int, default=None,
                   help="Scan blocks [0, N] only")
    b.add_argument("--no-refine", action="store_true",
                   help="Stop at block granularity (not with --exact or extraction)")
    b.add_argument("--exact", action="store_true",
                   help="Report the exact last non-pad byte")
    b.add_argument("--matcher", default=None, help="Pattern matcher backend")
    b.add_argument("--extract-trimmed", default="", metavar="PATH")
    b.add_argument("--extract-last-sector", default="", metavar="PATH")
    b.add_argument("--extract-pair", default="", metavar="PATH")
    b.add_argument("--json", default="", metavar="PATH")
    b.set_defaults(func=boundary_mode)

    a = sub.add_parser("alias", help="Detect wrap/modulo aliasing")
    a.add_argument("image")
    a.add_argument("--profile", default=None)
    a.add_argument("--block-size", default="")
    a.add_argument("--sample-size", default="")
    a.add_argument("--tail-size", default="")
    a.add_argument("--candidates", default="", help="e.g. 8G,16G,32G")
    a.add_argument("--pad", default="ff,00",
                   help="Pad bytes used to flag padding duplicates")
    a.add_argument("--hasher", default=None, help="blake3 or sha256")
    a.add_argument("--strong-ratio", type=float, default=0.5)
    a.add_argument("--dump-duplicates", default=None, metavar="DIR")
    a.add_argument("--no-peek", action="store_true")
    a.add_argument("--json", default="", metavar="PATH")
    a.set_defaults(func=alias_mode)

    g = sub.add_parser("generate", help="Write a synthetic test image")
    g.add_argument("output")
    g.add_argument("--mode", default="partial",
                   choices=("empty", "full", "partial", "weird", "range", "alias"))
    g.add_argument("--profile", default="", help="1g|2g|4g|8g|16g|32g")
    g.add_argument("--fake-gib", type=float, default=None)
    g.add_argument("--size", default="", help="Explicit size, e.g. 64M")
    g.add_argument("--data-gib", type=float, default=None)
    g.add_argument("--data-mib", type=float, default=None)
    g.add_argument("--data-percent", type=float, default=None)
    g.add_argument("--percent", type=float, default=100)
    g.add_argument("--fill-before", type=int, default=0)
    g.add_argument("--partial-bytes", type=int, default=None)
    g.add_argument("--fill-range", default=None)
    g.add_argument("--real-mib", type=float, default=None,
                   help="Real capacity for alias mode")
    g.add_argument("--pad", default="ff", choices=("ff", "00"))
    g.add_argument("--data", default="random", choices=("random", "pattern", "seeded"))
    g.add_argument("--seed", type=int, default=None)
    g.set_defaults(func=generate_mode)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    level = logging.INFO
    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    from flashscan.errors import ConfigurationError, FlashScanError

    try:
        return args.func(args)
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_ERROR
    except (FlashScanError, OSError) as e:
        logger.error("%s: %s", type(e).__name__, e)
        return EXIT_ERROR
    except KeyboardInterrupt:
        print("\n  Aborted.")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
