from __future__ import annotations

WINDOW_SIZE = 3000
WINDOW_OVERLAP = 500


def split_into_windows(
    text: str,
    *,
    size: int = WINDOW_SIZE,
    overlap: int = WINDOW_OVERLAP,
) -> list[str]:
    """Split ``text`` into windows of ``size`` chars, each overlapping the previous by ``overlap``."""
    if not text or not text.strip():
        return []
    size = max(int(size), 1)
    step = max(size - max(int(overlap), 0), 1)
    windows: list[str] = []
    start = 0
    while start < len(text):
        windows.append(text[start : start + size])
        if start + size >= len(text):
            break
        start += step
    return windows
