"""Content cache exceptions."""


class ContentError(Exception):
    """Base exception for content fetching and caching."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NetworkError(ContentError):
    """Upstream unreachable, timed out, or answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        super().__init__(message, status_code=status_code)
        self.body = body


class GraphQLError(NetworkError):
    """GraphQL response carried an ``errors`` block."""

    def __init__(self, errors: list[dict]):
        messages = ", ".join(str(e.get("message", e)) for e in errors)
        super().__init__(f"GraphQL errors: {messages}", status_code=200)
        self.errors = errors


class ParseError(ContentError):
    """Malformed JSON from upstream or from a corrupted cache file."""


class NotFoundError(ContentError):
    """Path does not exist upstream or in the local mirror."""

    def __init__(self, message: str = "Content not found"):
        super().__init__(message, status_code=404)


class CacheIOError(ContentError):
    """Persistent cache read/write/delete failure."""
