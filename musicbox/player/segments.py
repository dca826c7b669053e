"""
Segment skipping - keep-range math and the ffmpeg filter that applies it
"""
from collections.abc import Iterable
from dataclasses import dataclass


@dataclass(frozen=True)
class Segment:
    """A labelled time range (seconds) inside a video."""
    category: str
    start_time: float
    end_time: float

    @property
    def duration(self) -> float:
        return max(0.0, self.end_time - self.start_time)

    @classmethod
    def from_api(cls, data: dict) -> "Segment":
        """Build from a SponsorBlock skipSegments entry."""
        start, end = data["segment"][:2]
        return cls(category=data["category"], start_time=float(start), end_time=float(end))


@dataclass(frozen=True)
class KeepRange:
    """Span of the source that is actually played. end=None runs to the end of the stream."""
    start: float
    end: float | None = None


def select_segments(segments: Iterable[Segment], categories: Iterable[str], enabled: bool = True) -> list[Segment]:
    """Segments whose category is currently selected for skipping."""
    if not enabled:
        return []
    selected = set(categories)
    if not selected:
        return []
    return [segment for segment in segments if segment.category in selected]


def merge_segments(segments: Iterable[Segment], length: float | None = None) -> list[tuple[float, float]]:
    """Sorted, non-overlapping (start, end) spans clipped to [0, length]."""
    spans = []
    for segment in segments:
        start = max(0.0, segment.start_time)
        end = segment.end_time
        if length:
            end = min(end, length)
        if end > start:
            spans.append((start, end))
    spans.sort()

    merged: list[tuple[float, float]] = []
    for start, end in spans:
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def skipped_duration(segments: Iterable[Segment], length: float | None = None) -> float:
    """Total seconds removed by skipping the given segments (overlaps counted once)."""
    return sum(end - start for start, end in merge_segments(segments, length))


def resume_point(seek: float, segments: Iterable[Segment], length: float | None = None) -> float:
    """Where playback resumes when seeking to `seek`.

    Seeking into a skipped segment resumes at that segment's end.
    """
    for start, end in merge_segments(segments, length):
        if start <= seek < end:
            return end
    return seek


def keep_ranges(length: float, segments: Iterable[Segment], seek: float | None = None) -> list[KeepRange] | None:
    """Complement of the skipped segments from the resume point onwards.

    Returns None when the raw stream can be played as-is.
    """
    spans = merge_segments(segments, length)
    if not spans and not seek:
        return None

    position = resume_point(seek, segments, length) if seek else 0.0
    ranges: list[KeepRange] = []
    for start, end in spans:
        if end <= position:
            continue
        if start > position:
            ranges.append(KeepRange(position, start))
        position = max(position, end)

    # The tail stays open-ended so an inaccurate nominal length never cuts audio
    if not length or position < length or not ranges:
        ranges.append(KeepRange(position))
    return ranges


def build_filter(ranges: list[KeepRange]) -> str:
    """ffmpeg -filter_complex graph that concatenates the keep-ranges of input 0."""
    parts = []
    for i, keep in enumerate(ranges):
        trim = f"atrim=start={keep.start:.3f}"
        if keep.end is not None:
            trim += f":end={keep.end:.3f}"
        parts.append(f"[0:a]{trim},asetpts=PTS-STARTPTS[k{i}]")
    labels = "".join(f"[k{i}]" for i in range(len(ranges)))
    parts.append(f"{labels}concat=n={len(ranges)}:v=0:a=1")
    return ";".join(parts)
