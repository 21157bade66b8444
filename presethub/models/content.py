from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FileDescriptor(BaseModel):
    """A file or directory record in the shape of the GitHub contents API."""

    model_config = ConfigDict(extra="ignore")

    name: str
    path: str
    sha: str = ""
    size: int = 0
    url: str = ""
    html_url: str = ""
    git_url: str = ""
    download_url: str = ""
    type: Literal["file", "dir"] = "file"

    @field_validator("url", "html_url", "git_url", "download_url", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        # The contents API sends null links for directories
        return "" if value is None else value


class CommitAuthor(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    date: str = ""


class CommitDetail(BaseModel):
    model_config = ConfigDict(extra="ignore")

    author: CommitAuthor = CommitAuthor()


class CommitInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sha: str = ""
    commit: CommitDetail = CommitDetail()


class FileVersion(BaseModel):
    file: FileDescriptor
    commit: CommitInfo | None = None


class TreeEntry(BaseModel):
    """Entry of a GraphQL ``Tree`` object."""

    model_config = ConfigDict(extra="ignore")

    name: str
    type: str = "blob"  # "blob" (file) or "tree" (directory)
    mode: int = 0
    oid: str = ""
    size: int | None = None


class RateLimitInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    limit: int
    remaining: int
    reset_at: str = Field(alias="resetAt")
    used: int = 0


class PersistedEntry(BaseModel):
    """On-disk form of a cache entry."""

    data: Any
    timestamp: float
    ttl: float | None = None
    version: str = "1.0"
