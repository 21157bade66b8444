"""Cache invalidation driven by GitHub push webhooks."""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field

from presethub.services.content_service import ContentService

logger = logging.getLogger(__name__)


@dataclass
class InvalidationResult:
    invalidated: int = 0
    paths: list[str] = field(default_factory=list)
    files_added: int = 0
    files_modified: int = 0
    files_removed: int = 0


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Check an ``X-Hub-Signature-256`` header against the payload."""
    if not signature or not secret:
        return False
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature, expected)


def parent_directory(file_path: str) -> str | None:
    parts = file_path.split("/")
    if len(parts) <= 1:
        return None
    return "/".join(parts[:-1])


def ancestor_directories(file_path: str) -> list[str]:
    """All ancestors from the root down: a/b/c.json -> [a, a/b]."""
    parts = file_path.split("/")
    return ["/".join(parts[:i]) for i in range(1, len(parts))]


async def invalidate_for_push(service: ContentService, payload: dict) -> InvalidationResult:
    """Invalidate cache entries affected by the commits of a push event.

    Added and removed files can create or delete folders, so every ancestor
    listing is dropped. Modified files only touch their immediate parent.
    """
    added: set[str] = set()
    modified: set[str] = set()
    removed: set[str] = set()
    for commit in payload.get("commits") or []:
        added.update(commit.get("added") or [])
        modified.update(commit.get("modified") or [])
        removed.update(commit.get("removed") or [])

    result = InvalidationResult(
        files_added=len(added), files_modified=len(modified), files_removed=len(removed)
    )
    directories: set[str] = set()

    async def invalidate_file(file_path: str) -> None:
        if await service.invalidate_path(file_path, kind="commits"):
            result.invalidated += 1
            result.paths.append(f"commits:{file_path}")
        if file_path.lower().endswith(".json") and service.invalidate_json(file_path):
            result.invalidated += 1
            result.paths.append(f"json:{file_path}")

    for file_path in sorted(added | removed):
        await invalidate_file(file_path)
        directories.update(ancestor_directories(file_path))

    for file_path in sorted(modified - added - removed):
        await invalidate_file(file_path)
        parent = parent_directory(file_path)
        if parent:
            directories.add(parent)

    for dir_path in sorted(directories):
        if await service.invalidate_path(dir_path, kind="contents"):
            result.invalidated += 1
            result.paths.append(f"contents:{dir_path}")
        # Directory commit listings also change when a child changes
        if await service.invalidate_path(dir_path, kind="commits"):
            result.invalidated += 1
            result.paths.append(f"commits:{dir_path}")

    logger.info(
        "Processed push: +%d -%d ~%d files, invalidated %d cache entries",
        result.files_added, result.files_removed, result.files_modified, result.invalidated,
    )
    return result
