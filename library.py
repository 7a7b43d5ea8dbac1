"""Media library lookup: file ids are paths relative to the media directory."""

from __future__ import annotations

import logging
import pathlib

from errors import MediaNotFoundError


log = logging.getLogger(__name__)


class DirectoryLibrary:
    """Resolve file ids inside one media directory."""

    def __init__(self, media_dir: str | pathlib.Path):
        self.media_dir = pathlib.Path(media_dir).resolve()

    def find_media_file(self, file_id: str) -> pathlib.Path:
        if not file_id or "\x00" in file_id:
            raise MediaNotFoundError(file_id)
        path = (self.media_dir / file_id).resolve()
        # Refuse ids that escape the media dir (../, absolute paths, symlinks out)
        if not path.is_relative_to(self.media_dir):
            log.warning("Rejected media id outside library: %r", file_id)
            raise MediaNotFoundError(file_id)
        if not path.is_file():
            raise MediaNotFoundError(file_id)
        return path
