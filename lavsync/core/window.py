"""
Analysis-window selection.

The reference window is chosen from the source durations: the middle of the
reference, long enough to hold several onsets, short enough to keep DTW
tractable. The lavalier is searched over a wider range around it.
"""

import logging
import math
from typing import Optional

from ..config import settings
from ..exceptions import InputInvalidError
from .types import AnalysisWindow

logger = logging.getLogger(__name__)


def select_analysis_window(duration_a: float,
                           duration_b: float,
                           search_window: Optional[AnalysisWindow] = None,
                           min_window: Optional[float] = None,
                           max_window: Optional[float] = None,
                           fraction: Optional[float] = None) -> AnalysisWindow:
    """
    Pick the ``(start, duration)`` analyzed in both sources.

    Args:
        duration_a: Reference (camera) duration in seconds
        duration_b: Lavalier duration in seconds
        search_window: Explicit window supplied by the caller; honoured as is
        min_window, max_window, fraction: Overrides of the configured rules

    Returns:
        AnalysisWindow with ``start >= 0`` and ``start + duration`` inside both sources
    """
    if duration_a <= 0 or duration_b <= 0:
        raise InputInvalidError(
            f"Source durations must be positive (a={duration_a:.3f}s, b={duration_b:.3f}s)"
        )

    shorter = min(duration_a, duration_b)

    if search_window is not None:
        if search_window.end_seconds > shorter + 1e-9:
            raise InputInvalidError(
                f"search_window {search_window.start_seconds:.3f}s+{search_window.duration_seconds:.3f}s "
                f"exceeds the shorter source ({shorter:.3f}s)"
            )
        return search_window

    min_window = settings.MIN_WINDOW if min_window is None else min_window
    max_window = settings.MAX_WINDOW if max_window is None else max_window
    fraction = settings.WINDOW_FRACTION if fraction is None else fraction

    if shorter < min_window:
        duration = shorter
    else:
        duration = min(max(fraction * shorter, min_window), max_window)

    start = max(0.0, (duration_a - duration) / 2.0)
    # The window has to exist in b too so the default search range contains it
    start = max(0.0, min(start, shorter - duration))

    window = AnalysisWindow(start_seconds=start, duration_seconds=duration)
    logger.debug(f"Analysis window {start:.2f}s + {duration:.2f}s "
                 f"(sources {duration_a:.2f}s / {duration_b:.2f}s)")
    return window


def window_supports_offset(window: AnalysisWindow,
                           offset_seconds: float,
                           duration_a: float,
                           duration_b: float,
                           min_overlap: Optional[float] = None) -> bool:
    """
    Whether an offset keeps the aligned windows on real audio.

    The reference window moved by ``offset_seconds`` into b, and b's window
    moved back into a, must each cover at least ``min_overlap`` of the window
    inside their source; otherwise the alignment is against padding.
    """
    min_overlap = settings.MIN_WINDOW_OVERLAP if min_overlap is None else min_overlap
    required = min_overlap * window.duration_seconds - 1e-9
    return (_covered(window.start_seconds + offset_seconds, window.duration_seconds, duration_b) >= required
            and _covered(window.start_seconds - offset_seconds, window.duration_seconds, duration_a) >= required)


def _covered(start: float, duration: float, source_duration: float) -> float:
    return min(start + duration, source_duration) - max(start, 0.0)


def select_search_range(window: AnalysisWindow,
                        duration_b: float,
                        margin_seconds: float,
                        frame_seconds: float,
                        requested: Optional[AnalysisWindow] = None) -> AnalysisWindow:
    """
    Segment of b that the reference window is searched in.

    Defaults to the window widened by ``margin_seconds`` on both sides. The
    range is clipped to b and its start is moved onto the reference's frame
    grid, so both feature tracks sample the same instants.

    Args:
        window: Reference window in a
        duration_b: Lavalier duration in seconds
        margin_seconds: Widening on each side, normally the maximum offset
        frame_seconds: Hop length in seconds
        requested: Explicit range supplied by the caller

    Returns:
        AnalysisWindow inside ``[0, duration_b]``
    """
    if requested is None:
        start = window.start_seconds - margin_seconds
        end = window.end_seconds + margin_seconds
    else:
        start, end = requested.start_seconds, requested.end_seconds
    end = min(end, duration_b)

    if frame_seconds > 0:
        steps = int(round((start - window.start_seconds) / frame_seconds))
        steps = max(steps, int(math.ceil(-window.start_seconds / frame_seconds - 1e-9)))
        start = window.start_seconds + steps * frame_seconds
    start = max(0.0, start)

    if end - start <= 0:
        raise InputInvalidError(
            f"search range {start:.3f}s-{end:.3f}s does not intersect b ({duration_b:.3f}s)"
        )
    return AnalysisWindow(start_seconds=start, duration_seconds=end - start)
