"""Local filesystem mirror of the content repository.

When enabled, reads are served straight from a directory tree on disk in the
same record shapes the GitHub client produces. No caching is applied.
"""

from __future__ import annotations

import base64
import json
import logging
import mimetypes
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from presethub.config import Settings
from presethub.models.content import CommitAuthor, CommitDetail, CommitInfo, FileDescriptor, TreeEntry

logger = logging.getLogger(__name__)


class LocalMirror:
    """Serves directory listings and files from ``root``."""

    def __init__(self, root: str | Path, enabled: bool = True) -> None:
        self._root = Path(root).resolve()
        self._enabled = enabled

    @classmethod
    def from_settings(cls, settings: Settings) -> LocalMirror:
        return cls(settings.mirror_root_path, enabled=settings.use_local_mirror)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def enabled(self) -> bool:
        return self._enabled

    def is_available(self) -> bool:
        """Enabled and the root directory exists."""
        return self._enabled and self._root.is_dir()

    def log_status(self) -> None:
        if not self._enabled:
            logger.info("Local mirror disabled, using GitHub API")
        elif self._root.is_dir():
            logger.info("Local mirror enabled at %s", self._root)
        else:
            logger.warning("Local mirror enabled but directory not found: %s", self._root)

    def _resolve(self, path: str) -> Path | None:
        candidate = (self._root / path.strip("/")).resolve()
        if candidate != self._root and self._root not in candidate.parents:
            logger.warning("Local mirror path escapes root: %s", path)
            return None
        return candidate

    def file_path(self, path: str) -> Path | None:
        """Absolute path of an existing mirrored file or directory."""
        local = self._resolve(path)
        if local is None or not local.exists():
            return None
        return local

    def has_directory(self, path: str) -> bool:
        local = self._resolve(path)
        return local is not None and local.is_dir()

    def _directory(self, path: str) -> Path | None:
        local = self._resolve(path)
        if local is None:
            return None
        if not local.exists():
            logger.warning("Local mirror path not found: %s", local)
            return None
        if not local.is_dir():
            logger.warning("Local mirror path is not a directory: %s", local)
            return None
        return local

    def list_directory(self, path: str) -> list[FileDescriptor]:
        """Directory listing shaped like the GitHub contents API. Missing -> []."""
        local = self._directory(path)
        if local is None:
            return []

        files = []
        for child in sorted(local.iterdir(), key=lambda p: p.name):
            is_dir = child.is_dir()
            files.append(FileDescriptor(
                name=child.name,
                path=f"{path.strip('/')}/{child.name}".lstrip("/"),
                size=0 if is_dir else child.stat().st_size,
                download_url="" if is_dir else child.as_uri(),
                type="dir" if is_dir else "file",
            ))
        return files

    def list_tree(self, path: str) -> list[TreeEntry]:
        """Directory entries shaped like GraphQL tree entries. Missing -> []."""
        local = self._directory(path)
        if local is None:
            return []

        entries = []
        for child in sorted(local.iterdir(), key=lambda p: p.name):
            st = child.stat()
            is_dir = child.is_dir()
            entries.append(TreeEntry(
                name=child.name,
                type="tree" if is_dir else "blob",
                mode=st.st_mode,
                size=None if is_dir else st.st_size,
            ))
        return entries

    def read_file(self, path: str) -> Any:
        """File contents: parsed JSON for ``.json`` files, text otherwise. Missing -> None."""
        local = self._resolve(path)
        if local is None:
            return None
        if not local.exists():
            logger.warning("Local mirror file not found: %s", local)
            return None
        if not local.is_file():
            logger.warning("Local mirror path is not a file: %s", local)
            return None

        try:
            content = local.read_text(encoding="utf-8")
            if local.suffix.lower() == ".json":
                return json.loads(content)
            return content
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error("Error reading local mirror file %s: %s", local, e)
            return None

    def latest_commit(self, path: str) -> CommitInfo | None:
        """Synthetic commit dated at the file's modification time."""
        local = self.file_path(path)
        if local is None:
            return None
        mtime = datetime.fromtimestamp(local.stat().st_mtime, tz=timezone.utc)
        return CommitInfo(
            sha="",
            commit=CommitDetail(author=CommitAuthor(name="Local Mirror", date=mtime.isoformat())),
        )

    def image_data_url(self, path: str) -> str | None:
        """``data:`` URL for a mirrored binary file such as a PNG card."""
        local = self.file_path(path)
        if local is None or not local.is_file():
            return None
        try:
            raw = local.read_bytes()
        except OSError as e:
            logger.error("Error reading local mirror image %s: %s", local, e)
            return None
        mime_type = mimetypes.guess_type(local.name)[0] or "application/octet-stream"
        return f"data:{mime_type};base64,{base64.b64encode(raw).decode('ascii')}"
