"""URL paths for share pages and share image bytes."""

from __future__ import annotations


def share_http_path(token: str) -> str:
    """Return the share page path ``/s/{token}``."""
    return "/s/" + token


def share_image_http_path(token: str) -> str:
    """Return the share image path ``/i/{token}``."""
    return "/i/" + token


def share_package_member_image_path(token: str, position: int) -> str:
    """Return ``/i/{token}/{position}``; negative positions become 0."""
    return f"/i/{token}/{max(position, 0)}"