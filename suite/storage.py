"""Access to uploaded files on the local filesystem.

Uploads live in a single flat directory.  Requested paths are reduced to
their basename before lookup so a request can never reach outside it.
"""

from __future__ import annotations

import os
from pathlib import Path

CONTENT_TYPES = {
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".ppt": "application/vnd.ms-powerpoint",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".txt": "text/plain",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"


def content_type_for(filename: str) -> str:
    return CONTENT_TYPES.get(Path(filename).suffix.lower(), DEFAULT_CONTENT_TYPE)


class UploadStorage:
    def __init__(self, base_path: str | None = None) -> None:
        self.base_path = Path(base_path or os.path.join(os.getcwd(), "public", "uploads")).resolve()

    # helper ------------------------------------------------------------
    def _full_path(self, key: str) -> Path:
        return self.base_path / os.path.basename(key.replace("\\", "/"))

    def resolve(self, key: str) -> Path | None:
        """Return the file for ``key`` or ``None`` when it does not exist."""
        name = os.path.basename(key.replace("\\", "/"))
        if not name or name in (".", ".."):
            return None
        path = self._full_path(key)
        if not path.is_file():
            return None
        return path
