"""Offline cache layer that sits in front of the network for the scoreboard.

``OfflineCacheTransport`` plays the part of the service worker: it is an
httpx transport, so any ``httpx.Client`` built on it gets stale-while-revalidate
pages, a network-first API with an explicit "queued" answer when offline, and
versioned cache cleanup. ``ServiceWorkerChannel`` is the message boundary
between that layer and the page-side sync client.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Tuple

import httpx

logger = logging.getLogger(__name__)

CACHE_PREFIX = "madina-basketball"
DEFAULT_CACHE_VERSION = "v1"
OFFLINE_URL = "/offline.html"
API_PREFIX = "/api/"
QUEUED_MESSAGE = "Offline - This action will be queued and synced when online"
QUEUED_HEADER = "X-Offline-Queued"
SYNC_TAG = "sync-games"
SYNC_MESSAGE = "SYNC_GAMES"

CRITICAL_ASSETS = (
    "/",
    "/game/basic",
    "/game/stats",
    "/statssheet",
    "/game",
    "/tools",
    "/globals.css",
    "/icon.png",
    "/manifest.json",
)

# Stored bodies are already decoded, so these no longer describe them.
_DROPPED_HEADERS = {"content-encoding", "content-length", "transfer-encoding"}


@dataclass
class CachedResponse:
    status_code: int
    headers: List[Tuple[str, str]]
    content: bytes

    @classmethod
    def from_response(cls, response: httpx.Response) -> "CachedResponse":
        headers = [(k, v) for k, v in response.headers.items() if k.lower() not in _DROPPED_HEADERS]
        return cls(status_code=response.status_code, headers=headers, content=response.content)

    def to_response(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(self.status_code, headers=self.headers, content=self.content, request=request)


class CacheStorage:
    """Named caches of responses keyed by path and query."""

    def __init__(self) -> None:
        self._caches: Dict[str, Dict[str, CachedResponse]] = {}

    def open(self, name: str) -> Dict[str, CachedResponse]:
        return self._caches.setdefault(name, {})

    def keys(self) -> List[str]:
        return list(self._caches)

    def delete(self, name: str) -> bool:
        return self._caches.pop(name, None) is not None


def queued_response(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        503,
        headers={QUEUED_HEADER: "1"},
        json={"error": QUEUED_MESSAGE, "queued": True},
        request=request,
    )


def is_queued_response(response: httpx.Response) -> bool:
    """True when the cache layer answered for an unreachable API."""

    if response.status_code != 503:
        return False
    if response.headers.get(QUEUED_HEADER) == "1":
        return True
    try:
        payload = response.json()
    except ValueError:
        return False
    return isinstance(payload, dict) and payload.get("queued") is True


class OfflineCacheTransport(httpx.BaseTransport):
    def __init__(
        self,
        network: httpx.BaseTransport,
        origin: str,
        version: str = DEFAULT_CACHE_VERSION,
        precache: Iterable[str] = CRITICAL_ASSETS,
        offline_url: str = OFFLINE_URL,
        api_prefix: str = API_PREFIX,
        caches: CacheStorage | None = None,
    ) -> None:
        self.network = network
        self.origin = httpx.URL(origin)
        self.cache_name = f"{CACHE_PREFIX}-{version}"
        self.precache = list(precache)
        self.offline_url = offline_url
        self.api_prefix = api_prefix
        self.caches = caches or CacheStorage()
        # One pending refresh per cache key, however often the page is hit.
        self._background: Dict[str, Callable[[], None]] = {}

    # ------------------------------------------------------------------
    # Lifecycle

    def install(self) -> int:
        """Precache the critical pages; a missing asset never fails the install."""

        cache = self.caches.open(self.cache_name)
        assets = list(self.precache)
        if self.offline_url not in assets:
            assets.append(self.offline_url)

        cached = 0
        for path in assets:
            request = httpx.Request("GET", self.origin.join(path))
            try:
                response = self.network.handle_request(request)
                response.read()
            except httpx.TransportError as exc:
                logger.error("Failed to precache %s: %s", path, exc)
                continue
            if response.status_code != 200:
                logger.warning("Skipping precache of %s (HTTP %s)", path, response.status_code)
                continue
            cache[self._cache_key(request)] = CachedResponse.from_response(response)
            cached += 1
        logger.info("Precached %s of %s critical assets into %s", cached, len(assets), self.cache_name)
        return cached

    def activate(self) -> List[str]:
        """Delete every cache that does not belong to the current version."""

        stale = [name for name in self.caches.keys() if name != self.cache_name]
        for name in stale:
            logger.info("Deleting old cache: %s", name)
            self.caches.delete(name)
        return stale

    def run_background_tasks(self) -> int:
        tasks, self._background = self._background, {}
        for task in tasks.values():
            task()
        return len(tasks)

    @property
    def pending_background_tasks(self) -> int:
        return len(self._background)

    # ------------------------------------------------------------------
    # Request handling

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        if not self._same_origin(request.url):
            return self.network.handle_request(request)
        if request.url.path.startswith(self.api_prefix):
            return self._network_first(request)
        if request.method != "GET":
            return self.network.handle_request(request)
        return self._stale_while_revalidate(request)

    def close(self) -> None:
        self.network.close()

    def _network_first(self, request: httpx.Request) -> httpx.Response:
        try:
            return self.network.handle_request(request)
        except httpx.TransportError as exc:
            logger.info("API %s %s unreachable, answering queued: %s", request.method, request.url.path, exc)
            return queued_response(request)

    def _stale_while_revalidate(self, request: httpx.Request) -> httpx.Response:
        key = self._cache_key(request)
        cached = self.caches.open(self.cache_name).get(key)
        if cached is not None:
            self._background.setdefault(key, lambda: self._revalidate(request))
            return cached.to_response(request)

        try:
            response = self.network.handle_request(request)
        except httpx.TransportError as exc:
            logger.debug("Network unavailable for %s: %s", request.url.path, exc)
            return self._offline_fallback(request)

        if response.status_code != 200:
            return response
        response.read()
        stored = CachedResponse.from_response(response)
        self.caches.open(self.cache_name)[key] = stored
        return stored.to_response(request)

    def _revalidate(self, request: httpx.Request) -> None:
        try:
            response = self.network.handle_request(request)
            response.read()
        except httpx.TransportError as exc:
            logger.debug("Background refresh of %s failed: %s", request.url.path, exc)
            return
        if response.status_code == 200:
            self.caches.open(self.cache_name)[self._cache_key(request)] = CachedResponse.from_response(response)

    def _offline_fallback(self, request: httpx.Request) -> httpx.Response:
        if self._is_navigation(request):
            page = self.caches.open(self.cache_name).get(self.offline_url)
            if page is not None:
                return page.to_response(request)
        return httpx.Response(503, text="Offline", request=request)

    # ------------------------------------------------------------------
    # Helpers

    def _same_origin(self, url: httpx.URL) -> bool:
        return (url.scheme, url.host, url.port) == (self.origin.scheme, self.origin.host, self.origin.port)

    @staticmethod
    def _cache_key(request: httpx.Request) -> str:
        return request.url.raw_path.decode("ascii")

    @staticmethod
    def _is_navigation(request: httpx.Request) -> bool:
        if request.headers.get("sec-fetch-mode") == "navigate":
            return True
        return "text/html" in request.headers.get("accept", "")


MessageHandler = Callable[[Dict[str, Any]], None]


class ServiceWorkerChannel:
    """postMessage-style boundary between the cache layer and page clients."""

    def __init__(self) -> None:
        self._clients: List[MessageHandler] = []

    def add_client(self, handler: MessageHandler) -> Callable[[], None]:
        self._clients.append(handler)

        def remove() -> None:
            if handler in self._clients:
                self._clients.remove(handler)

        return remove

    def post_message(self, message: Dict[str, Any]) -> int:
        # Clients get their own copy, as they would across a real worker boundary.
        encoded = json.dumps(message)
        for handler in list(self._clients):
            try:
                handler(json.loads(encoded))
            except Exception:
                logger.exception("Client failed to handle %s message", message.get("type"))
        return len(self._clients)

    def handle_sync_event(self, tag: str) -> bool:
        if tag != SYNC_TAG:
            return False
        logger.info("Background sync fired; asking clients to sync queued games")
        self.post_message({"type": SYNC_MESSAGE})
        return True
