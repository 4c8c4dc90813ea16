"""
Local persistence for the studio: accounts, saved scripts, brand voices and
cached images, kept as JSON values in a single SQLite key/value file.
"""

from .service import StudioStorage

__all__ = ["StudioStorage"]
