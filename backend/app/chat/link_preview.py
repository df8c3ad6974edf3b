"""Best-effort link previews for text messages.

The first ``http(s)`` URL in a message is fetched and its ``<title>`` and
Open Graph tags are extracted. Previews are optional enrichment: any
failure (timeout, non-HTML response, network error) yields None and the
message is delivered without one.
"""
import asyncio
import html
import ipaddress
import logging
import re
from typing import Optional

import httpx

from .schemas import LinkPreview

logger = logging.getLogger(__name__)

URL_RE = re.compile(r"https?://[^\s)<>\"']+", re.IGNORECASE)
_TITLE_RE = re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE)
_META_RE = re.compile(r"<meta\s+[^>]*>", re.IGNORECASE)
_ATTR_RE = re.compile(r"""([a-zA-Z:_-]+)\s*=\s*("([^"]*)"|'([^']*)')""")

_OG_FIELDS = {
    "og:title": "title",
    "og:image": "image",
    "og:description": "description",
    "og:site_name": "siteName",
}

MAX_REDIRECTS = 5


def find_first_url(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = URL_RE.search(text)
    return match.group(0) if match else None


def _is_internal_address(ip_str: str) -> bool:
    ip = ipaddress.ip_address(ip_str.split("%", 1)[0])
    return ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved or ip.is_multicast


async def is_private_host(host: Optional[str]) -> bool:
    """True if ``host`` resolves to any non-public address.

    Hosts that cannot be resolved count as private.
    """
    if not host:
        return True
    try:
        return _is_internal_address(host)
    except ValueError:
        pass
    try:
        addrinfos = await asyncio.get_running_loop().getaddrinfo(host, None)
        return any(_is_internal_address(sockaddr[0]) for _, _, _, _, sockaddr in addrinfos)
    except (OSError, ValueError):
        return True


def parse_preview(url: str, document: str) -> LinkPreview:
    """Extract title and Open Graph fields from an HTML document."""
    fields = {}
    for tag in _META_RE.findall(document):
        attrs = {m.group(1).lower(): m.group(3) if m.group(3) is not None else m.group(4)
                 for m in _ATTR_RE.finditer(tag)}
        key = (attrs.get("property") or attrs.get("name") or "").lower()
        if key in _OG_FIELDS and attrs.get("content"):
            fields.setdefault(_OG_FIELDS[key], html.unescape(attrs["content"]).strip())
    if "title" not in fields:
        match = _TITLE_RE.search(document)
        fields["title"] = html.unescape(match.group(1)).strip() if match else url
    return LinkPreview(url=url, **fields)


class LinkPreviewFetcher:
    """Fetches link previews with a hard latency and size bound.

    Args:
        timeout_seconds: Upper bound for the whole fetch.
        max_bytes: Maximum number of body bytes read.
        user_agent: User-Agent header sent upstream.
        enabled: When False, ``preview_for`` always returns None.
        block_private_hosts: Refuse URLs (and redirect targets) whose host
            resolves to a loopback, private, link-local, reserved or
            multicast address.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        timeout_seconds: float = 5.0,
        max_bytes: int = 512 * 1024,
        user_agent: str = "roomchat-link-preview/1.0",
        enabled: bool = True,
        block_private_hosts: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_bytes = max_bytes
        self.user_agent = user_agent
        self.enabled = enabled
        self.block_private_hosts = block_private_hosts
        self._transport = transport

    async def _allowed(self, url: httpx.URL) -> bool:
        if url.scheme not in ("http", "https"):
            return False
        if self.block_private_hosts and await is_private_host(url.host):
            logger.info(f"[Preview] Blocked internal host {url.host}")
            return False
        return True

    async def fetch(self, url: str) -> Optional[LinkPreview]:
        """Fetch and parse ``url``. Returns None on any failure."""
        try:
            return await asyncio.wait_for(self._fetch(url), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.debug(f"[Preview] Timed out fetching {url}")
        except (httpx.HTTPError, UnicodeDecodeError, ValueError) as e:
            logger.debug(f"[Preview] Failed to fetch {url}: {e}")
        return None

    async def _fetch(self, url: str) -> Optional[LinkPreview]:
        # Redirects are followed by hand so every hop passes the host check
        target = httpx.URL(url)
        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=self.timeout_seconds,
            follow_redirects=False,
            headers={"User-Agent": self.user_agent},
        ) as client:
            for _ in range(MAX_REDIRECTS + 1):
                if not await self._allowed(target):
                    return None
                async with client.stream("GET", target) as response:
                    if response.is_redirect:
                        location = response.headers.get("location")
                        if not location:
                            return None
                        target = target.join(location)
                        continue
                    if response.status_code != 200:
                        return None
                    content_type = response.headers.get("content-type", "")
                    if content_type and "html" not in content_type.lower():
                        return None
                    body = bytearray()
                    async for chunk in response.aiter_bytes():
                        body.extend(chunk)
                        if len(body) >= self.max_bytes:
                            break
                    encoding = response.encoding or "utf-8"
                    break
            else:
                logger.debug(f"[Preview] Too many redirects for {url}")
                return None
        document = bytes(body[: self.max_bytes]).decode(encoding, errors="replace")
        return parse_preview(url, document)

    async def preview_for(self, text: Optional[str]) -> Optional[LinkPreview]:
        """Preview of the first URL in ``text``, if enabled and any."""
        if not self.enabled:
            return None
        url = find_first_url(text)
        if url is None:
            return None
        return await self.fetch(url)
