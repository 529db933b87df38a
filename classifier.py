"""
Decides whether a navigated URL is a trackable Wikipedia article and extracts
its canonical identity.
"""
import logging
import re
from urllib.parse import unquote, urlparse

from state import ArticleIdentity

logger = logging.getLogger("wikipath.classifier")

CONTENT_HOST_SUFFIX = "wikipedia.org"
ARTICLE_HOST_PATTERN = re.compile(r"^[a-z]{2,3}\.wikipedia\.org$")
ARTICLE_PATH_PREFIX = "/wiki/"
# Namespace and special pages (Talk:, Special:, File:, ...) carry a colon.
RESERVED_PREFIX_MARKER = ":"


def _hostname(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def is_content_host(url: str | None) -> bool:
    """True for any page on a Wikipedia host, articles or not."""
    if not url:
        return False
    try:
        host = _hostname(url)
    except ValueError:
        return False
    return host == CONTENT_HOST_SUFFIX or host.endswith(f".{CONTENT_HOST_SUFFIX}")


def classify(url: str | None) -> ArticleIdentity | None:
    """
    Returns the article identity for ``url``, or None when the URL is not a
    trackable article. A None result is routine and callers just skip the event.
    """
    if not url:
        return None
    try:
        parsed = urlparse(url)
        host = (parsed.hostname or "").lower()
    except ValueError as exc:
        logger.debug("Unparseable URL %r (%s). Skipping.", url, exc)
        return None

    if parsed.scheme not in ("http", "https"):
        return None
    if not ARTICLE_HOST_PATTERN.match(host):
        return None
    if not parsed.path.startswith(ARTICLE_PATH_PREFIX):
        return None

    raw_title = parsed.path[len(ARTICLE_PATH_PREFIX):]
    if not raw_title or RESERVED_PREFIX_MARKER in raw_title:
        return None

    try:
        title = unquote(raw_title, errors="strict")
    except UnicodeDecodeError:
        logger.debug("Undecodable article title in %r. Skipping.", url)
        return None
    title = title.replace("_", " ").strip()
    if not title:
        return None

    return ArticleIdentity(title=title, url=url, language=host.split(".")[0])
