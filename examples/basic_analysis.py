#!/usr/bin/env python3
"""
Basic Analysis Example

Measures the offset of a lavalier recording against a camera clip and
prints it as frame offsets for common frame rates.
"""

import sys
import os

from lavsync import SyncOptions, SyncStatus, synchronize
from lavsync.core.decoder import FFmpegDecoder


def analyze_sync(video_file, lav_file):
    """
    Synchronize a lavalier track against the camera audio.

    Args:
        video_file (str): Camera clip (any container ffmpeg reads)
        lav_file (str): Lavalier recording

    Returns:
        SyncResult, or None when no offset was found
    """
    print(f"🎵 Analyzing sync between:")
    print(f"   Camera: {video_file}")
    print(f"   Lav:    {lav_file}")
    print()

    result = synchronize(video_file, lav_file, SyncOptions(sample_rate=22050), decoder=FFmpegDecoder())
    if result.status != SyncStatus.OK:
        print(f"❌ No offset: {result.status.value} ({result.reason})")
        return None

    offset_seconds = result.offset_seconds
    print(f"✅ Analysis Complete!")
    print(f"   Sync Offset: {offset_seconds:+.3f} seconds")
    print(f"   Confidence: {result.confidence:.1%} ({result.confidence_tier})")
    print(f"   Content: {result.content.value}")

    frame_rates = [23.976, 24, 25, 29.97, 30]
    print(f"\n📊 Frame Offset Equivalents:")
    for fps in frame_rates:
        print(f"   {fps:6.3f} fps: {offset_seconds * fps:+7.2f} frames")

    if not result.accepted:
        print(f"\n🔬 Confidence below {result.min_confidence:.2f}, check the offset by ear")
    return result


def main():
    if len(sys.argv) != 3:
        print("Usage: python basic_analysis.py <video_file> <lav_file>")
        print()
        print("Example:")
        print("  python basic_analysis.py A001C003.MOV LAV_003.WAV")
        sys.exit(1)

    video_file, lav_file = sys.argv[1], sys.argv[2]
    for path in (video_file, lav_file):
        if not os.path.exists(path):
            print(f"❌ File not found: {path}")
            sys.exit(1)

    result = analyze_sync(video_file, lav_file)
    sys.exit(0 if result is not None and result.accepted else 2)


if __name__ == "__main__":
    main()
