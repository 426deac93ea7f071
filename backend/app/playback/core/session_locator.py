"""
Session Locator - Attach to the host's embedded browser

The desktop host exposes a Chrome remote-debugging endpoint on one of a
handful of ports. This module finds it, attaches Playwright over CDP and
picks the page that carries the user's web content, skipping the host's
own UI pages (tab bar, sidebar) and internal schemes.
"""

import logging
from typing import Any, List, Optional, Sequence
from urllib.parse import urlparse

import httpx
from playwright.async_api import Browser, Page, Playwright, async_playwright

from ..config import PlaybackConfig
from ..errors import NoTargetFound, SessionConnectionError

logger = logging.getLogger(__name__)


# ==================== Probe Strategies ====================

class ProbeStrategy:
    """Yields candidate debugging endpoints, in priority order"""

    name = "base"

    def endpoints(self) -> List[str]:
        raise NotImplementedError


class ConfiguredPortStrategy(ProbeStrategy):
    """The port the host announced through configuration"""

    name = "configured"

    def __init__(self, port: Optional[int], host: str = "127.0.0.1"):
        self.port = port
        self.host = host

    def endpoints(self) -> List[str]:
        if not self.port:
            return []
        return [f"http://{self.host}:{self.port}"]


class FixedPortListStrategy(ProbeStrategy):
    """Well-known ports the host has been seen listening on"""

    name = "fixed_ports"

    def __init__(self, ports: Sequence[int], host: str = "127.0.0.1"):
        self.ports = list(ports)
        self.host = host

    def endpoints(self) -> List[str]:
        return [f"http://{self.host}:{port}" for port in self.ports]


class EndpointStrategy(ProbeStrategy):
    """An explicit endpoint URL"""

    name = "endpoint"

    def __init__(self, url: str):
        self.url = url.rstrip("/")

    def endpoints(self) -> List[str]:
        return [self.url]


def default_strategies(config: PlaybackConfig) -> List[ProbeStrategy]:
    return [
        ConfiguredPortStrategy(config.cdp_port, config.cdp_host),
        FixedPortListStrategy(config.fallback_ports, config.cdp_host),
    ]


# ==================== Target Selection ====================

def is_content_url(url: Optional[str], chrome_ui_markers: Sequence[str]) -> bool:
    """True for http(s) pages that are not part of the host's own UI"""
    if not url:
        return False
    scheme = urlparse(url).scheme.lower()
    if scheme not in ("http", "https"):
        return False
    return not any(marker in url for marker in chrome_ui_markers)


def _normalize_url(url: str) -> str:
    return url.rstrip("/")


def select_content_page(
    pages: Sequence[Any],
    chrome_ui_markers: Sequence[str],
    active_url: Optional[str] = None,
    target_order: Optional[Sequence[str]] = None
) -> Any:
    """
    Pick the page carrying web content.

    Preference when several qualify: the host's active-tab URL, then the
    CDP target list order (most recently activated first), then the last
    page opened.

    Raises:
        NoTargetFound: no page qualifies
    """
    candidates = [p for p in pages if is_content_url(p.url, chrome_ui_markers)]

    if not candidates:
        seen = [p.url for p in pages]
        raise NoTargetFound(
            f"No web content page found among {len(seen)} target(s): {seen}"
        )

    if len(candidates) == 1:
        return candidates[0]

    if active_url:
        wanted = _normalize_url(active_url)
        for page in candidates:
            if _normalize_url(page.url) == wanted:
                return page

    if target_order:
        for target_url in target_order:
            wanted = _normalize_url(target_url)
            for page in candidates:
                if _normalize_url(page.url) == wanted:
                    return page

    return candidates[-1]


# ==================== Session ====================

class SessionHandle:
    """
    Live attachment to the host browser.

    get_page() re-resolves the content page on every call, so a page that
    navigated or was replaced since the attach is still found.
    """

    def __init__(self, locator: "SessionLocator", browser: Browser, endpoint: str):
        self._locator = locator
        self.browser = browser
        self.endpoint = endpoint

    def is_connected(self) -> bool:
        return self.browser.is_connected()

    async def get_page(self) -> Page:
        return await self._locator.resolve_page()


class SessionLocator:
    """Finds and attaches to the host's debugging endpoint"""

    def __init__(
        self,
        config: Optional[PlaybackConfig] = None,
        strategies: Optional[List[ProbeStrategy]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        playwright_factory=None
    ):
        self.config = config or PlaybackConfig()
        self.strategies = strategies if strategies is not None else default_strategies(self.config)
        self._transport = transport
        self._playwright_factory = playwright_factory or async_playwright

        self._playwright: Optional[Playwright] = None
        self._handle: Optional[SessionHandle] = None
        self._active_url: Optional[str] = None

    def set_active_url(self, url: Optional[str]):
        """Hint from the host about which tab is in front"""
        self._active_url = url

    @property
    def is_connected(self) -> bool:
        return self._handle is not None and self._handle.is_connected()

    @property
    def endpoint(self) -> Optional[str]:
        return self._handle.endpoint if self._handle else None

    def candidate_endpoints(self) -> List[str]:
        endpoints = []
        for strategy in self.strategies:
            for endpoint in strategy.endpoints():
                if endpoint not in endpoints:
                    endpoints.append(endpoint)
        return endpoints

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.probe_timeout, transport=self._transport)

    async def _probe(self, client: httpx.AsyncClient, endpoint: str) -> bool:
        try:
            response = await client.get(f"{endpoint}/json/version")
            if response.status_code != 200:
                logger.debug(f"[SESSION] {endpoint} answered {response.status_code}")
                return False
            info = response.json()
            logger.info(f"[SESSION] Found debugging endpoint {endpoint} ({info.get('Browser', 'unknown')})")
            return True
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"[SESSION] {endpoint} not reachable: {e}")
            return False

    async def probe_endpoints(self) -> Optional[str]:
        """First endpoint answering /json/version, or None"""
        async with self._client() as client:
            for endpoint in self.candidate_endpoints():
                if await self._probe(client, endpoint):
                    return endpoint
        return None

    async def fetch_target_order(self, endpoint: str) -> List[str]:
        """Page URLs from the CDP target list, most recently activated first"""
        try:
            async with self._client() as client:
                response = await client.get(f"{endpoint}/json")
                if response.status_code != 200:
                    return []
                targets = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"[SESSION] Could not read target list: {e}")
            return []

        return [
            t.get("url", "") for t in targets
            if isinstance(t, dict) and t.get("type") == "page"
        ]

    async def connect(self) -> SessionHandle:
        """
        Attach to the host browser.

        Idempotent while the browser stays connected; re-probes after a
        disconnect.

        Raises:
            SessionConnectionError: no endpoint answers or attaching fails
            NoTargetFound: attached, but no content page exists
        """
        if self.is_connected:
            return self._handle

        if self._handle is not None:
            logger.info("[SESSION] Previous session disconnected, re-probing")
            await self.close()

        endpoint = await self.probe_endpoints()
        if not endpoint:
            tried = ", ".join(self.candidate_endpoints()) or "none configured"
            raise SessionConnectionError(
                f"Could not find the browser debugging endpoint. Tried: {tried}. "
                "Make sure the desktop host is running with remote debugging enabled."
            )

        try:
            if self._playwright is None:
                self._playwright = await self._playwright_factory().start()
            browser = await self._playwright.chromium.connect_over_cdp(endpoint)
        except Exception as e:
            logger.error(f"[SESSION] Failed to attach to {endpoint}: {e}")
            await self.close()
            raise SessionConnectionError(f"Failed to attach to {endpoint}: {e}") from e

        self._handle = SessionHandle(self, browser, endpoint)

        # Fail early if there is nothing to drive
        page = await self.resolve_page()
        logger.info(f"[SESSION] Attached to {endpoint}, content page: {page.url}")
        return self._handle

    async def current_page(self) -> Page:
        """Content page of the live session, attaching first if needed"""
        handle = await self.connect()
        return await handle.get_page()

    async def resolve_page(self) -> Page:
        if self._handle is None:
            raise SessionConnectionError("Not connected to the host browser")
        if not self._handle.is_connected():
            raise SessionConnectionError("The host browser disconnected")

        pages = []
        for context in self._handle.browser.contexts:
            pages.extend(context.pages)

        target_order = None
        candidates = [p for p in pages if is_content_url(p.url, self.config.chrome_ui_markers)]
        if len(candidates) > 1 and not self._matches_active(candidates):
            target_order = await self.fetch_target_order(self._handle.endpoint)

        return select_content_page(
            pages,
            self.config.chrome_ui_markers,
            active_url=self._active_url,
            target_order=target_order
        )

    def _matches_active(self, pages: Sequence[Any]) -> bool:
        if not self._active_url:
            return False
        wanted = _normalize_url(self._active_url)
        return any(_normalize_url(p.url) == wanted for p in pages)

    async def close(self):
        """Disconnect and stop Playwright. Safe to call more than once."""
        handle, self._handle = self._handle, None
        playwright, self._playwright = self._playwright, None

        if handle is not None:
            try:
                await handle.browser.close()
            except Exception as e:
                logger.debug(f"[SESSION] Browser close: {e}")

        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as e:
                logger.debug(f"[SESSION] Playwright stop: {e}")
