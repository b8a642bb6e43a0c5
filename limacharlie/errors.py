# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Exception hierarchy for the LimaCharlie SDK.

Every error raised by the SDK derives from LimaCharlieError and renders as
a single line naming its kind, so it is actionable without logs.

Usage:
    try:
        await client.request("GET", "who")
    except UnauthorizedError:
        ...  # credentials rejected even after one token refresh
    except RESTError as e:
        print(e.status, e.preview)
"""

PREVIEW_SIZE = 128


class LimaCharlieError(Exception):
    """Base class for all SDK errors."""
    pass


class InvalidOptionsError(LimaCharlieError):
    """Caller-side misuse detected before anything is sent."""

    def __init__(self, detail: str, field: str | None = None):
        self.detail = detail
        self.field = field
        super().__init__(f"invalid client options: {detail}")


class NoAPIKeyError(LimaCharlieError):
    """A token refresh was attempted with no API key configured."""

    def __init__(self):
        super().__init__("no api key configured")


class NetworkError(LimaCharlieError):
    """Transport failure that persisted through every retry."""

    def __init__(self, verb: str, path: str, cause: BaseException | str, attempts: int = 1):
        self.verb = verb
        self.path = path
        self.attempts = attempts
        super().__init__(f"network error: {verb} {path}: {cause or type(cause).__name__}")


def make_preview(body: bytes | str | None) -> str:
    """First PREVIEW_SIZE bytes of a body, decoded leniently, on one line."""
    if body is None:
        return ""
    if isinstance(body, str):
        body = body.encode("utf-8", errors="replace")
    text = body[:PREVIEW_SIZE].decode("utf-8", errors="replace")
    return " ".join(text.split())


class RESTError(LimaCharlieError):
    """The server answered with a final non-2xx status."""

    def __init__(self, status: int, preview: str = "", verb: str = "", path: str = ""):
        self.status = status
        self.preview = preview
        self.verb = verb
        self.path = path
        where = f" {verb} {path}" if verb or path else ""
        super().__init__(f"api error ({status}){where}: {preview}")


class UnauthorizedError(RESTError):
    """Final 401, after the single token refresh already happened."""
    pass


class ResourceNotFoundError(RESTError):
    """404, or a list result missing the section that was asked for."""

    def __init__(self, status: int = 404, preview: str = "resource not found", verb: str = "", path: str = ""):
        super().__init__(status, preview, verb, path)


class DecodeError(LimaCharlieError):
    """A payload could not be parsed into the expected shape."""

    def __init__(self, detail: str, path: str = "$"):
        self.detail = detail
        self.path = path
        super().__init__(f"decode error at {path}: {detail}")


class OperationCancelledError(LimaCharlieError):
    """A caller-supplied deadline expired before the operation completed."""

    def __init__(self, detail: str = "deadline exceeded"):
        super().__init__(f"operation cancelled: {detail}")


class SyncError(LimaCharlieError):
    """
    A sync section failed part way through.

    `operations` holds every operation emitted before the failure,
    including those from earlier sections, so callers can see partial
    progress. The lower-level error is chained as __cause__.
    """

    def __init__(self, section: str, detail: str, operations: list | None = None):
        self.section = section
        self.detail = detail
        self.operations = list(operations or [])
        super().__init__(f"{section}: {detail}")


def is_inaccessible(error: BaseException) -> bool:
    """True for REST errors meaning the credentials may not touch the resource."""
    return isinstance(error, RESTError) and error.status in (401, 403)
