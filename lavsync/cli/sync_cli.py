#!/usr/bin/env python3
"""
Lavalier Sync CLI Tool
======================

Measures the offset between a camera clip's audio and an externally
recorded lavalier track (and its -6 dB safety track, when there is one).

Exit codes: 0 when the offset is accepted, 2 when the core abstained or the
confidence is below ``--min-confidence``, 1 on input or decode errors.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from ..analysis import synchronize_lavalier
from ..config import settings
from ..core.decoder import FFmpegDecoder, LibrosaDecoder
from ..core.types import SyncOptions, SyncQuality, SyncResult, SyncStatus
from ..db.offset_cache import OffsetCache
from ..logging_config import setup_logging

logger = logging.getLogger(__name__)

EXIT_ACCEPTED = 0
EXIT_ERROR = 1
EXIT_REJECTED = 2


def parse_arguments(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="lavsync",
        description="Lavalier Audio Sync - camera audio vs lavalier offset detection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s A001C003.MOV LAV_003.WAV
  %(prog)s A001C003.MOV LAV_003.WAV --safety LAV_003_S.WAV --cross-check
  %(prog)s A001C003.MOV LAV_003.WAV --quality high_quality --json
  %(prog)s A001C003.MOV LAV_003.WAV --cache offsets.db
  %(prog)s A001C003.MOV LAV_003.WAV --cache offsets.db --reuse-cached
        """,
    )

    parser.add_argument("video", type=Path, help="Camera clip (any container ffmpeg reads)")
    parser.add_argument("lav", type=Path, help="High-gain lavalier recording")
    parser.add_argument("--safety", type=Path, default=None, help="-6 dB safety track from the same recorder")
    parser.add_argument(
        "--cross-check",
        action="store_true",
        help="Also sync the safety track against the high-gain track",
    )

    parser.add_argument(
        "--quality",
        choices=[q.value for q in SyncQuality],
        default=SyncQuality.STANDARD.value,
        help="Processing quality (default: standard)",
    )
    parser.add_argument(
        "--max-offset",
        type=float,
        default=settings.MAX_OFFSET,
        help=f"Largest offset to search, in seconds (default: {settings.MAX_OFFSET})",
    )
    parser.add_argument(
        "--min-confidence",
        type=float,
        default=settings.MIN_CONFIDENCE,
        help=f"Confidence needed to accept the offset (default: {settings.MIN_CONFIDENCE})",
    )
    parser.add_argument(
        "--sample-rate",
        type=int,
        default=settings.SAMPLE_RATE,
        help=f"Decode sample rate (default: {settings.SAMPLE_RATE})",
    )
    parser.add_argument("--start", type=float, default=None, help="Analysis window start (seconds)")
    parser.add_argument("--duration", type=float, default=None, help="Analysis window length (seconds)")
    parser.add_argument("--timeout", type=float, default=None, help="Wall-clock budget per clip (seconds)")
    parser.add_argument("--parallel", action="store_true", help="Run the estimators on a thread pool")
    parser.add_argument(
        "--decoder",
        choices=["ffmpeg", "librosa"],
        default="ffmpeg",
        help="Media decoder (default: ffmpeg)",
    )

    parser.add_argument("--cache", type=Path, default=None, help="SQLite offset cache to read and update")
    parser.add_argument("--refresh", action="store_true", help="Ignore a cached offset and re-analyze")
    parser.add_argument(
        "--reuse-cached",
        action="store_true",
        help="Report a cached offset as is instead of re-checking it",
    )
    parser.add_argument(
        "--cache-margin",
        type=float,
        default=settings.CACHE_MARGIN,
        help=f"Seconds searched either side of a cached offset (default: {settings.CACHE_MARGIN})",
    )

    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    parser.add_argument("--log-file", default=None, help="Also log to this file (rotated)")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")

    args = parser.parse_args(argv)
    if (args.start is None) != (args.duration is None):
        parser.error("--start and --duration must be given together")
    if args.cross_check and args.safety is None:
        parser.error("--cross-check needs --safety")
    return args


def build_options(args: argparse.Namespace) -> SyncOptions:
    search_window = (args.start, args.duration) if args.start is not None else None
    return SyncOptions(
        quality=SyncQuality(args.quality),
        max_offset_seconds=args.max_offset,
        min_confidence=args.min_confidence,
        search_window=search_window,
        timeout_seconds=args.timeout,
        sample_rate=args.sample_rate,
        parallel=args.parallel,
    )


def narrow_to_cached(opts: SyncOptions, cache: OffsetCache, args: argparse.Namespace) -> SyncOptions:
    """Re-run over the cached window, searching the lav only around the cached offset."""
    window = cache.cached_window(str(args.video), str(args.lav))
    search_range = cache.window_around(str(args.video), str(args.lav), margin_seconds=args.cache_margin)
    if window is None or search_range is None:
        return opts
    logger.info(f"Cached offset found, searching {args.lav.name} at "
                f"{search_range.start_seconds:.2f}s + {search_range.duration_seconds:.2f}s")
    return opts.model_copy(update={"search_window": window, "search_range": search_range})


def print_result(result: SyncResult, safety: Path = None, safety_consistent=None):
    """Print a human-readable summary."""
    print(f"\n📊 SYNC RESULT: {result.status.value.upper()}")
    if result.status == SyncStatus.OK:
        offset_ms = result.offset_seconds * 1000
        print(f"   Offset:      {result.offset_seconds:+.4f} s ({offset_ms:+.1f} ms)")
    print(f"   Confidence:  {result.confidence:.2f} ({result.confidence_tier})")
    print(f"   Content:     {result.content.value}")
    if result.window is not None:
        print(f"   Window:      {result.window.start_seconds:.2f}s + {result.window.duration_seconds:.2f}s")
    if result.reason:
        print(f"   Reason:      {result.reason}")

    if result.trace:
        print("\n🔍 ALGORITHMS:")
        for r in result.trace:
            flag = " (excluded)" if r.details.get("excluded") else ""
            note = f" [{r.reason}]" if r.reason else ""
            print(f"   {r.algorithm:<17} {r.offset_seconds:+9.4f} s  conf {r.confidence:.2f}{note}{flag}")

    if safety is not None:
        print(f"\n🎙️  Safety track {safety.name}: same offset as the high-gain track")
        if safety_consistent is not None:
            print(f"   Cross-check: {'✅ consistent' if safety_consistent else '⚠️  inconsistent'}")

    if result.status == SyncStatus.OK and not result.accepted:
        print(f"\n🔬 LOW CONFIDENCE - below {result.min_confidence:.2f}, manual verification recommended")


def exit_code(result: SyncResult) -> int:
    if result.status in (SyncStatus.INPUT_INVALID, SyncStatus.DECODE_FAILED):
        return EXIT_ERROR
    return EXIT_ACCEPTED if result.accepted else EXIT_REJECTED


def main(argv=None) -> int:
    """Main CLI application."""
    args = parse_arguments(argv)
    setup_logging(log_level="DEBUG" if args.verbose else "WARNING", log_file=args.log_file)

    try:
        opts = build_options(args)
    except ValidationError as e:
        print(f"❌ Invalid options: {e}", file=sys.stderr)
        return EXIT_ERROR

    cache = OffsetCache(args.cache) if args.cache else None
    if cache is not None and not args.refresh:
        entry = cache.lookup(str(args.video), str(args.lav))
        if entry is not None and args.reuse_cached:
            logger.info(f"Using cached offset for {args.video.name} / {args.lav.name}")
            if args.json:
                print(json.dumps({"cached": True, **entry}, indent=2))
            else:
                print(f"\n📦 CACHED: {entry['offset_seconds']:+.4f} s (confidence {entry['confidence']:.2f})")
            return EXIT_ACCEPTED if entry["confidence"] >= args.min_confidence else EXIT_REJECTED
        if entry is not None and args.start is None:
            opts = narrow_to_cached(opts, cache, args)

    decoder = FFmpegDecoder() if args.decoder == "ffmpeg" else LibrosaDecoder()
    try:
        outcome = synchronize_lavalier(
            args.video,
            args.lav,
            safety=args.safety,
            opts=opts,
            decoder=decoder,
            cross_check=args.cross_check,
        )
    except KeyboardInterrupt:
        print("\n⚠️  Analysis interrupted by user.", file=sys.stderr)
        return 130

    result = outcome.high_gain
    if cache is not None and result.accepted:
        cache.store(str(args.video), str(args.lav), result)
        if args.safety is not None:
            cache.store(str(args.video), str(args.safety), result)

    if args.json:
        print(json.dumps(outcome.to_dict(), indent=2))
    else:
        print_result(result, args.safety, outcome.safety_consistent)
    return exit_code(result)


if __name__ == "__main__":
    sys.exit(main())
