"""Segment selection policy: fallback, validation of analysis output, clamping."""

import math

from pydantic import ValidationError

from .errors import StageFailure
from .models import AnalysisResult, Segment

FALLBACK_DURATION_S = 15.0


def fallback_segment(duration_s: float = FALLBACK_DURATION_S) -> Segment:
    """Deterministic segment used when no analyzer is available."""
    return Segment(start=0.0, end=duration_s, summary="fallback")


def segment_from_analysis(result: AnalysisResult) -> Segment:
    """Validate an analyzer answer.

    Raises:
        StageFailure: (analyze) if a bound is not finite, start < 0 or end <= start
    """
    if not (math.isfinite(result.start) and math.isfinite(result.end)):
        raise StageFailure(
            "analyze", f"segment bounds must be finite ({result.start}, {result.end})"
        )
    if result.start < 0:
        raise StageFailure("analyze", f"segment start is negative ({result.start})")
    if result.end <= result.start:
        raise StageFailure(
            "analyze", f"segment end ({result.end}) must be after start ({result.start})"
        )
    try:
        return Segment(start=result.start, end=result.end, summary=result.summary)
    except ValidationError as e:
        raise StageFailure("analyze", f"invalid segment: {e}") from e


def clamp_segment(segment: Segment, duration_s: float) -> Segment:
    """
    Restrict a segment to [0, duration_s].

    Args:
        segment: Requested window
        duration_s: Length of the source media in seconds

    Returns:
        Clamped segment

    Raises:
        StageFailure: (cut) if nothing of the window lies inside the media
    """
    start = max(0.0, segment.start)
    end = min(segment.end, duration_s)

    if end <= start:
        raise StageFailure(
            "cut",
            f"segment {segment.start:.2f}-{segment.end:.2f}s is outside media "
            f"of {duration_s:.2f}s",
        )

    return Segment(start=start, end=end, summary=segment.summary)
