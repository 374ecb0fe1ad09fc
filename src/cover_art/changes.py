"""Track-set change detection between two analyses of the same playlist."""

from typing import Any, Dict, Iterable, List, Sequence, Tuple

from .models import ChangeDetectionResult, Track


DEFAULT_THRESHOLD = 0.25


def outlier_threshold(track_count: int, base: float = DEFAULT_THRESHOLD) -> float:
    """Fraction of new tracks that counts as a significant change.

    Small playlists need a larger share before one new song means much.
    """
    if track_count <= 2:
        return max(0.5, base)
    if track_count == 3:
        return max(1 / 3, base)
    return base


def _keys(entries: Iterable[Any]) -> List[Tuple[str, str]]:
    keys = []
    for entry in entries:
        if isinstance(entry, Track):
            keys.append((entry.name, entry.artist))
        else:
            keys.append((entry.get("name", ""), entry.get("artist", "")))
    return keys


def _label(key: Tuple[str, str]) -> str:
    return f"{key[0]} - {key[1]}"


def detect_changes(previous: Sequence[Dict[str, Any]], current: Sequence[Track],
                   base_threshold: float = DEFAULT_THRESHOLD) -> ChangeDetectionResult:
    """Compare the previous track snapshot with the current tracks.

    Tracks are matched by name and artist. The result is advisory: the
    pipeline records it on the analysis but never skips a run because of it.

    Args:
        previous: Snapshot entries ({"name", "artist", ...}) of the last analysis
        current: Tracks fetched for this run
        base_threshold: Threshold for playlists of four or more tracks

    Returns:
        ChangeDetectionResult
    """
    previous_keys = _keys(previous)
    current_keys = _keys(current)
    previous_set = set(previous_keys)
    current_set = set(current_keys)

    added = [_label(key) for key in dict.fromkeys(current_keys) if key not in previous_set]
    removed = [_label(key) for key in dict.fromkeys(previous_keys) if key not in current_set]

    total = len(current_keys)
    threshold = outlier_threshold(total, base_threshold)
    outliers = len(added)

    return ChangeDetectionResult(
        tracks_added=added,
        tracks_removed=removed,
        outlier_count=outliers,
        outlier_threshold=threshold,
        should_regenerate=total > 0 and outliers / total >= threshold,
    )


def no_changes() -> ChangeDetectionResult:
    """Result used for a playlist's first analysis."""
    return ChangeDetectionResult(
        tracks_added=[],
        tracks_removed=[],
        outlier_count=0,
        outlier_threshold=DEFAULT_THRESHOLD,
        should_regenerate=False,
    )
