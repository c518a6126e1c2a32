"""
Product page fetching and image extraction.

Pages are parsed with BeautifulSoup: product galleries are found through the
attributes retailers commonly use for high resolution images, in priority
order, with icons, logos and thumbnails filtered out. URLs that only appear
inside inline scripts (scene7 renditions, JSON-LD ``image`` fields) are
picked out of the raw markup.
"""

import hashlib
import logging
import re
from typing import List, Optional
from urllib.parse import urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from jobengine.classifier.client import raise_for_service_status
from jobengine.config import Settings, settings
from jobengine.jobs.errors import ServiceTimeout

logger = logging.getLogger(__name__)

_IMG_EXT = r"\.(?:jpg|jpeg|png|webp)"
_IMAGE_FILE = re.compile(_IMG_EXT, re.I)

# Script and JSON embedded URLs, matched against the raw markup
_SCENE7 = re.compile(r"[\"']([^\"']+scene7[^\"']*" + _IMG_EXT + r"[^\"']*)[\"']", re.I)
_JSON_IMAGE = re.compile(r"\"image\"\s*:\s*\[?[\"']([^\"'\]]+" + _IMG_EXT + r"[^\"'\]]*)[\"']", re.I)

# Lazy-load and zoom attributes, highest resolution first
_GALLERY_ATTRS = ("data-src", "data-zoom-image", "data-large", "data-original")
_GALLERY_PATH = re.compile(r"/(?:product|media|images?|gallery)", re.I)
_PRODUCT_PATH = re.compile(r"/(?:products?|p|item|dp)/|-p\d+|/\d{5,}|\.html?$", re.I)

_EXCLUDED_TERMS = (
    "thumb", "thumbnail", "icon", "logo", "sprite", "placeholder",
    "50x", "100x", "150x", "200x", "1x1", "blank", "pixel",
    "loading", "spinner", "arrow", "chevron", "close", "menu",
    "social", "facebook", "twitter", "instagram", "pinterest",
    "payment", "visa", "mastercard", "paypal", "badge", "flag",
)

_MEN = ("/men/", "/mens/", "/male/", "/him/", "/man/", "gender=male", "gender=men", "/gentlemen/")
_WOMEN = ("/women/", "/womens/", "/female/", "/her/", "/woman/", "gender=female", "gender=women", "/ladies/")


def normalize_url(src: str, base_url: str) -> Optional[str]:
    """Absolute URL without query string or fragment, or None if unusable."""
    src = (src or "").strip()
    if not src:
        return None
    if src.startswith("//"):
        src = "https:" + src
    parsed = urlparse(urljoin(base_url, src))
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path}"


def is_excluded(url: str) -> bool:
    lower = url.lower()
    return any(term in lower for term in _EXCLUDED_TERMS)


def extract_images(html: str, page_url: str, limit: int) -> List[str]:
    images: List[str] = []

    def add(raw: str) -> None:
        url = normalize_url(raw, page_url)
        if url and not is_excluded(url) and url not in images:
            images.append(url)

    soup = BeautifulSoup(html, "html.parser")
    sources = [img.get("src") or "" for img in soup.find_all("img")]

    for match in _SCENE7.finditer(html):
        add(match.group(1))
    for attr in _GALLERY_ATTRS:
        for tag in soup.find_all(attrs={attr: True}):
            if _IMAGE_FILE.search(tag[attr]):
                add(tag[attr])
    for match in _JSON_IMAGE.finditer(html):
        add(match.group(1))
    for src in sources:
        if _GALLERY_PATH.search(src) and _IMAGE_FILE.search(src):
            add(src)
    for src in sources:
        if _IMAGE_FILE.search(src):
            add(src)
    for tag in soup.find_all(srcset=True):
        # Last candidate is normally the largest
        candidates = [part.strip().split()[0] for part in tag["srcset"].split(",") if part.strip()]
        if candidates:
            add(candidates[-1])
    return images[:limit]


def extract_product_links(html: str, page_url: str, limit: int) -> List[str]:
    """Same-site links that look like product detail pages."""
    origin = urlparse(page_url).netloc
    links: List[str] = []
    for anchor in BeautifulSoup(html, "html.parser").find_all("a", href=True):
        url = normalize_url(anchor["href"], page_url)
        if not url or urlparse(url).netloc != origin or url in links:
            continue
        if _PRODUCT_PATH.search(urlparse(url).path):
            links.append(url)
        if len(links) >= limit:
            break
    return links


def gender_from_url(url: str) -> str:
    lower = url.lower()
    if any(p in lower for p in _MEN):
        return "men"
    if any(p in lower for p in _WOMEN):
        return "women"
    return "unknown"


def image_hash(url: str) -> str:
    return hashlib.sha1(url.encode("utf-8")).hexdigest()[:16]


class PageFetcher:
    """Fetches HTML pages, mapping failures onto the service error taxonomy."""

    def __init__(
        self,
        config: Settings = settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = config.scrape_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                headers={"User-Agent": "Mozilla/5.0 (compatible; jobengine/1.0)"},
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def fetch(self, url: str) -> str:
        client = await self._get_client()
        try:
            response = await client.get(url)
        except httpx.TimeoutException as e:
            raise ServiceTimeout(f"Timed out fetching {url}") from e
        raise_for_service_status(response, service=f"Fetch {url}")
        return response.text
