"""Class label loading.

The label file is UTF-8 text with one class name per line; the line order
defines the class index. Blank lines are skipped.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

FALLBACK_LABELS: tuple[str, ...] = (
    "shark",
    "dolphin",
    "whale",
    "jellyfish",
    "crab",
    "octopus",
    "starfish",
    "turtle",
)


def load_labels(path: Path) -> tuple[str, ...]:
    """Read class labels from ``path``, falling back to the default sea animal set.

    Any failure to read the file (missing, unreadable, not UTF-8) is logged and
    answered with ``FALLBACK_LABELS``; callers never see the error.
    """
    try:
        with path.open(encoding="utf-8") as fh:
            return tuple(line.rstrip("\r\n") for line in fh if line.rstrip("\r\n"))
    except (OSError, UnicodeDecodeError):
        logger.exception("Error loading labels from %s", path)
        return FALLBACK_LABELS
