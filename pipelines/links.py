"""Link classification for the deep crawler.

Both public functions are pure: the same inputs always give the same answer.
"""

import logging
from typing import List, Set
from urllib.parse import urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup

from .models import CrawlLink, LinkType

logger = logging.getLogger(__name__)

# Obvious non-documentation targets
SKIP_PATTERNS = (
    "login", "signup", "register", "cart", "checkout",
    "download", "pricing", "contact",
    ".zip", ".tar", ".gz", ".exe", ".dmg", ".pkg",
    "mailto:", "tel:", "javascript:",
)

DOC_PATTERNS = (
    "doc", "guide", "tutorial", "api", "reference",
    "manual", "help", "wiki", "readme", "getting-started",
    "quickstart", "overview", "concepts", "examples",
)


def _host(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def classify(url: str, source_url: str) -> LinkType:
    """Classify ``url`` relative to the page it was found on."""
    target_host = _host(url)
    source_host = _host(source_url)
    if not target_host or not source_host:
        return LinkType.UNKNOWN

    if target_host == source_host:
        return LinkType.INTERNAL
    if target_host.endswith(source_host) or source_host.endswith(target_host):
        return LinkType.SUBDOMAIN
    return LinkType.EXTERNAL


def _is_bare_fragment(link: CrawlLink) -> bool:
    if link.url.startswith("#"):
        return True
    parsed = urlparse(link.url)
    if not parsed.fragment:
        return False
    # Same page, different anchor
    return urlunparse(parsed._replace(fragment="")) == link.source_url.split("#", 1)[0]


def is_documentation_link(link: CrawlLink) -> bool:
    """Decide whether a link looks like documentation rather than noise."""
    try:
        path = urlparse(link.url).path.lower()
    except ValueError:
        return False
    text = link.text.lower()
    full_url = link.url.lower()

    if _is_bare_fragment(link):
        return False

    for pattern in SKIP_PATTERNS:
        if pattern in path or pattern in text or pattern in full_url:
            return False

    for pattern in DOC_PATTERNS:
        if pattern in path or pattern in text:
            return True

    return link.link_type in (LinkType.INTERNAL, LinkType.SUBDOMAIN)


def normalize_url(url: str) -> str:
    """Drop the fragment so anchors on one page map to one URL."""
    parsed = urlparse(url)
    return urlunparse(parsed._replace(fragment=""))


def extract_links(html: str, page_url: str, depth: int) -> List[CrawlLink]:
    """Extract every ``a[href]`` on a page as a classified CrawlLink.

    Args:
        html: Page markup
        page_url: URL the markup was fetched from, used to resolve relative links
        depth: Depth of the page itself; links are discovered at ``depth + 1``

    Returns:
        Links in document order, one per distinct target URL
    """
    links: List[CrawlLink] = []
    seen: Set[str] = set()

    try:
        soup = BeautifulSoup(html, "html.parser")
    except Exception as e:
        logger.warning(f"Failed to parse links from {page_url}: {e}")
        return links

    for anchor in soup.select("a[href]"):
        href = anchor.get("href", "").strip()
        if not href:
            continue

        if href.startswith("#"):
            # Kept unresolved so the classifier can reject it
            url = href
        else:
            try:
                url = normalize_url(urljoin(page_url, href))
            except ValueError:
                logger.debug(f"Ignoring malformed href {href!r} on {page_url}")
                continue

        if url in seen:
            continue
        seen.add(url)

        links.append(CrawlLink(
            url=url,
            text=anchor.get_text(" ", strip=True),
            title=anchor.get("title", "") or "",
            source_url=page_url,
            depth=depth + 1,
            link_type=classify(url, page_url),
        ))

    return links
