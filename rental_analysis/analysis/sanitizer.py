"""Allow-list HTML sanitization for narrative text before display.

Executable content (``<script>``, ``<style>``, embedded objects, ``on*``
handlers, ``javascript:`` URLs) is removed. Tags outside the allow-list
are unwrapped so their text survives; attributes outside the allow-list
are dropped. Text is re-escaped on output, so markup can only appear
through allowed tags.
"""

import re
from typing import FrozenSet

from bs4 import BeautifulSoup, NavigableString


ALLOWED_TAGS: FrozenSet[str] = frozenset({
    "b", "i", "em", "strong", "u",
    "h1", "h2", "h3", "h4", "h5", "h6",
    "p", "br", "hr", "ul", "ol", "li", "blockquote",
    "code", "pre", "a", "img", "span", "div",
    "table", "thead", "tbody", "tr", "td", "th",
})

ALLOWED_ATTRIBUTES: FrozenSet[str] = frozenset({
    "href", "src", "alt", "title", "class", "style", "target", "rel",
})

# Removed together with everything inside them
DROP_WITH_CONTENT: FrozenSet[str] = frozenset({
    "script", "style", "iframe", "object", "embed", "noscript",
    "template", "frame", "frameset", "applet", "base", "link", "meta",
})

URL_ATTRIBUTES: FrozenSet[str] = frozenset({"href", "src"})

_DATA_ATTRIBUTE = re.compile(r"^data-[a-z0-9_.\-]+$")
_UNSAFE_SCHEME = re.compile(r"^(javascript|vbscript|data):", re.IGNORECASE)
_SAFE_DATA_IMAGE = re.compile(r"^data:image/(png|gif|jpe?g|webp);", re.IGNORECASE)
_UNSAFE_STYLE = re.compile(r"expression\s*\(|javascript:|url\s*\(", re.IGNORECASE)
_IGNORED_URL_CHARS = re.compile(r"[\x00-\x20]")

# Upper bound on re-parse passes while waiting for the output to settle
_MAX_PASSES = 8


def _is_safe_url(attribute: str, value: str) -> bool:
    compact = _IGNORED_URL_CHARS.sub("", value)
    if not _UNSAFE_SCHEME.match(compact):
        return True
    return attribute == "src" and bool(_SAFE_DATA_IMAGE.match(compact))


def _keep_attribute(attribute: str, value) -> bool:
    if isinstance(value, list):
        value = " ".join(value)
    if attribute in URL_ATTRIBUTES:
        return _is_safe_url(attribute, value)
    if attribute == "style":
        return not _UNSAFE_STYLE.search(value)
    return attribute in ALLOWED_ATTRIBUTES or bool(_DATA_ATTRIBUTE.match(attribute))


def _clean(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")

    # Comments, CDATA, doctypes and processing instructions
    for node in soup.find_all(string=lambda s: type(s) is not NavigableString):
        node.extract()

    for tag in soup.find_all(DROP_WITH_CONTENT):
        if not tag.decomposed:
            tag.decompose()

    for tag in soup.find_all(True):
        if tag.decomposed:
            continue
        if tag.name not in ALLOWED_TAGS:
            tag.unwrap()
            continue
        tag.attrs = {
            name: value
            for name, value in tag.attrs.items()
            if _keep_attribute(name.lower(), value)
        }

    # Text and attribute values are entity-escaped on output
    return str(soup)


def sanitize(html: str) -> str:
    """
    Strip unsafe markup from ``html``.

    Idempotent: ``sanitize(sanitize(x)) == sanitize(x)``. The result never
    contains the substring ``<script``.

    Removing a node can leave whitespace strings side by side, and the
    parser collapses those into one on the next read. Cleaning repeats
    until the output no longer changes, so the returned text is stable.
    """
    if not html:
        return ""

    cleaned = _clean(html)
    for _ in range(_MAX_PASSES):
        again = _clean(cleaned)
        if again == cleaned:
            break
        cleaned = again
    return cleaned


class ContentSanitizer:
    """Object wrapper so the sanitizer can be injected and replaced in tests."""

    def sanitize(self, html: str) -> str:
        return sanitize(html)
