# poolfeed/models/cached_image.py

"""Content-addressed image cache entry."""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path


@dataclass
class CachedImage:
    """One cached remote image, keyed by the hash of its resolved URL."""

    key: str
    file_path: Path
    local_path: str
    fetched_at: datetime
    known_bad: bool = False
