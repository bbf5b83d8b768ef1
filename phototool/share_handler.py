"""WSGI app serving share pages (``/s/{token}``) and share image bytes (``/i/{token}``).

Every miss answers with the same 404 so that responses reveal nothing about
whether a token exists. Requests are rate limited per client IP.
"""

from __future__ import annotations

import abc
import html
import logging
import os
import posixpath
from dataclasses import dataclass, field
from email.utils import formatdate
from typing import Callable, Iterable, Sequence

from phototool.ratelimit import RateLimitedApp, default_share_rate_limit
from phototool.share_paths import share_image_http_path, share_package_member_image_path

logger = logging.getLogger(__name__)

NOT_FOUND_BODY = b"Not Found\n"

SHARE_HTML_CONTENT_SECURITY_POLICY = (
    "default-src 'none'; base-uri 'none'; form-action 'none'; frame-ancestors 'none'; "
    "img-src 'self'; style-src 'unsafe-inline'; script-src 'none'"
)

_STAR_EMPTY = "\u2606"
_STAR_FILLED = "\u2605"


@dataclass(frozen=True)
class SharePayload:
    """The sanitized snapshot shown on a share page."""

    rating: int | None = None
    display_title: str = ""
    audience_label: str = ""


@dataclass(frozen=True)
class DefaultShare:
    """A resolved single-asset share link."""

    asset_id: int
    payload: SharePayload = field(default_factory=SharePayload)


@dataclass(frozen=True)
class PackageShare:
    """A resolved package share link with its ordered members."""

    member_ids: Sequence[int]
    payload: SharePayload = field(default_factory=SharePayload)


@dataclass(frozen=True)
class AssetFile:
    """Library-relative path and optional stored MIME type of a shareable asset."""

    rel_path: str
    mime: str | None = None


class ShareResolver(abc.ABC):
    """Looks up share tokens and shareable asset files."""

    @abc.abstractmethod
    def resolve_package(self, token: str) -> PackageShare | None:
        """Return the package share for *token*, or None."""

    @abc.abstractmethod
    def resolve_default(self, token: str) -> DefaultShare | None:
        """Return the single-asset share for *token*, or None."""

    @abc.abstractmethod
    def asset_file(self, asset_id: int) -> AssetFile | None:
        """Return the file of an asset still eligible for sharing, or None."""


class PageRenderer:
    """Renders the share HTML documents."""

    css = (
        "body{margin:0;background:#111;color:#eee;font-family:sans-serif}"
        ".shell{display:flex;flex-direction:column;align-items:center;padding:1rem}"
        ".photo{max-width:100%;max-height:90vh;object-fit: contain}"
        ".star.filled{color:#f5c518}"
        ".package-grid{display:grid;grid-template-columns:repeat(auto-fill,minmax(200px,1fr));gap:1rem}"
        ".skip-link{position:absolute;left:-999px}"
        ".skip-link:focus{left:1rem}"
        ".skip-link:focus:not(:focus-visible){left:-999px}"
        "@media (prefers-reduced-motion: reduce){*{transition:none!important;animation:none!important}}"
    )

    def _document(self, title: str, main: str) -> str:
        return (
            "<!DOCTYPE html>\n<html lang=\"en\"><head><meta charset=\"utf-8\">"
            f"<title>{html.escape(title)}</title><style>{self.css}</style></head><body>"
            '<a class="skip-link" href="#share-main">Skip to content</a>'
            f'<main id="share-main" class="shell" tabindex="-1">{main}</main></body></html>\n'
        )

    def render_single(self, image_path: str, stars_html: str, rating_label: str) -> str:
        main = (
            f'<img class="photo" src="{html.escape(image_path)}" alt="Shared photo">'
            f'<div id="share-rating-summary" role="group" aria-label="{html.escape(rating_label)}">'
            f"{stars_html}<span>{html.escape(rating_label)}</span></div>"
        )
        return self._document("Shared photo", main)

    def render_package(
        self, page_title: str, heading: str, summary: str, items: Sequence[tuple[str, str, str]]
    ) -> str:
        figures = "".join(
            f'<figure><img class="photo" src="{html.escape(path)}" alt="{html.escape(alt)}">'
            f"<figcaption>{html.escape(caption)}</figcaption></figure>"
            for path, alt, caption in items
        )
        main = (
            f"<h1>{html.escape(heading)}</h1><p>{html.escape(summary)}</p>"
            f'<div class="package-grid">{figures}</div>'
        )
        return self._document(page_title, main)


def path_token_after_prefix(clean_path: str, prefix: str) -> str | None:
    """Return the single path segment after *prefix*, or None."""
    if not clean_path or not prefix or not clean_path.startswith(prefix):
        return None
    rest = clean_path[len(prefix):]
    if not rest or "/" in rest:
        return None
    return rest


def parse_share_image_path(clean_path: str) -> tuple[str, int | None] | None:
    """Parse ``/i/{token}`` or ``/i/{token}/{position}``.

    Returns ``(token, None)`` for a single image, ``(token, position)`` for a
    package member, or None when the path is invalid.
    """
    if not clean_path.startswith("/i/"):
        return None
    rest = clean_path[3:]
    if not rest:
        return None
    token, sep, tail = rest.partition("/")
    if not sep:
        return token, None
    if not token or "/" in tail:
        return None
    if not tail.lstrip("+-").isdigit():
        return None
    try:
        pos = int(tail)
    except ValueError:
        return None
    if pos < 0:
        return None
    return token, pos


def _stars_html(filled: int) -> str:
    parts = []
    for i in range(5):
        if i < filled:
            parts.append(f'<span class="star filled" aria-hidden="true">{_STAR_FILLED}</span>')
        else:
            parts.append(f'<span class="star" aria-hidden="true">{_STAR_EMPTY}</span>')
    return "".join(parts)


def rating_view_model(rating: int | None) -> tuple[str, str]:
    """Return star markup and the label for a rating; out of 1..5 means unrated."""
    if rating is None or rating < 1 or rating > 5:
        return _stars_html(0), "Unrated"
    return _stars_html(rating), f"Rating: {rating}"


def _sniff_image(head: bytes) -> str | None:
    if head.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if head.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if len(head) >= 12 and head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"
    if head.startswith(b"BM"):
        return "image/bmp"
    if head.startswith(b"\x00\x00\x01\x00"):
        return "image/x-icon"
    return None


_EXT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


def content_type_for_share_image(mime: str | None, head: bytes, name: str) -> str:
    """Pick a safe Content-Type: stored image MIME, sniffed bytes, then extension."""
    if mime is not None:
        m = mime.strip()
        if m.lower().startswith("image/"):
            return m
    sniffed = _sniff_image(head[:512])
    if sniffed:
        return sniffed
    return _EXT_TYPES.get(os.path.splitext(name)[1].lower(), "application/octet-stream")


def _asset_primary_path(library_root: str, rel_path: str) -> str:
    rel = rel_path.replace("\\", "/")
    if not rel or rel.startswith("/") or os.path.isabs(rel):
        raise ValueError("invalid relative path")
    clean = posixpath.normpath(rel)
    if clean == ".." or clean.startswith("../"):
        raise ValueError("path escapes library")
    return os.path.join(library_root, *clean.split("/"))


def _clean_url_path(p: str) -> str:
    if not p.startswith("/"):
        p = "/" + p
    clean = posixpath.normpath(p)
    if clean.startswith("//"):
        clean = "/" + clean.lstrip("/")
    return clean


_Response = tuple[str, list[tuple[str, str]], bytes]


class ShareApp:
    """The share routes without rate limiting."""

    def __init__(
        self, resolver: ShareResolver, library_root: str, page_renderer: PageRenderer | None = None
    ) -> None:
        self.resolver = resolver
        self.library_root = library_root
        self.renderer = page_renderer if page_renderer is not None else PageRenderer()

    def __call__(self, environ: dict, start_response: Callable) -> Iterable[bytes]:
        method = environ.get("REQUEST_METHOD", "GET").upper()
        path = _clean_url_path(environ.get("PATH_INFO", "/") or "/")
        if path.startswith("/s/"):
            status, headers, body = self._serve_html(method, path_token_after_prefix(path, "/s/"))
        elif path.startswith("/i/"):
            status, headers, body = self._serve_image(method, parse_share_image_path(path))
        else:
            status, headers, body = _not_found()
        start_response(status, headers)
        return [b"" if method == "HEAD" else body]

    def _serve_html(self, method: str, token: str | None) -> _Response:
        if token is None or method not in ("GET", "HEAD"):
            return _not_found()
        try:
            pkg = self.resolver.resolve_package(token)
            if pkg is not None:
                return _html_ok(self._package_html(token, pkg))
            resolved = self.resolver.resolve_default(token)
        except Exception:
            logger.exception("share http resolve")
            return _not_found()
        if resolved is None:
            return _not_found()
        stars, label = rating_view_model(resolved.payload.rating)
        page = self.renderer.render_single(share_image_http_path(token), stars, label)
        return _html_ok(page)

    def _package_html(self, token: str, pkg: PackageShare) -> str:
        heading = pkg.payload.display_title.strip() or "Shared package"
        n = len(pkg.member_ids)
        summary = f"{n} photos — shared snapshot"
        audience = pkg.payload.audience_label.strip()
        if audience:
            summary += " · " + audience
        items = [
            (share_package_member_image_path(token, i), "Shared photo", f"Photo {i + 1} of {n}")
            for i in range(n)
        ]
        return self.renderer.render_package(heading, heading, summary, items)

    def _serve_image(self, method: str, parsed: tuple[str, int | None] | None) -> _Response:
        if parsed is None or method not in ("GET", "HEAD"):
            return _not_found()
        token, member_pos = parsed
        try:
            if member_pos is not None:
                pkg = self.resolver.resolve_package(token)
                if pkg is None or member_pos >= len(pkg.member_ids):
                    return _not_found()
                asset_id = pkg.member_ids[member_pos]
            else:
                resolved = self.resolver.resolve_default(token)
                if resolved is None:
                    return _not_found()
                asset_id = resolved.asset_id
            asset = self.resolver.asset_file(asset_id)
        except Exception:
            logger.exception("share http resolve image")
            return _not_found()
        if asset is None:
            return _not_found()
        try:
            abs_path = _asset_primary_path(self.library_root, asset.rel_path)
            with open(abs_path, "rb") as f:
                data = f.read()
                mtime = os.fstat(f.fileno()).st_mtime
        except (ValueError, OSError):
            logger.error("share http image open failed")
            return _not_found()
        ct = content_type_for_share_image(asset.mime, data[:512], os.path.basename(abs_path))
        headers = [
            ("Content-Type", ct),
            ("Cache-Control", "no-store"),
            ("Referrer-Policy", "no-referrer"),
        ]
        if ct.startswith("image/"):
            headers.append(("X-Content-Type-Options", "nosniff"))
        headers += [
            ("Last-Modified", formatdate(mtime, usegmt=True)),
            ("Accept-Ranges", "bytes"),
            ("Content-Length", str(len(data))),
        ]
        return "200 OK", headers, data


def _html_ok(page: str) -> _Response:
    body = page.encode("utf-8")
    return (
        "200 OK",
        [
            ("Content-Type", "text/html; charset=utf-8"),
            ("Cache-Control", "no-store"),
            ("X-Content-Type-Options", "nosniff"),
            ("Content-Security-Policy", SHARE_HTML_CONTENT_SECURITY_POLICY),
            ("Referrer-Policy", "no-referrer"),
            ("Content-Length", str(len(body))),
        ],
        body,
    )


def _not_found() -> _Response:
    return (
        "404 Not Found",
        [
            ("Content-Type", "text/plain; charset=utf-8"),
            ("Cache-Control", "no-store"),
            ("Content-Length", str(len(NOT_FOUND_BODY))),
        ],
        NOT_FOUND_BODY,
    )


def new_http_app(
    resolver: ShareResolver,
    library_root: str,
    page_renderer: PageRenderer | None = None,
) -> RateLimitedApp:
    """Build the share WSGI app with the default per-IP rate limit."""
    return RateLimitedApp(
        ShareApp(resolver, library_root, page_renderer), default_share_rate_limit()
    )