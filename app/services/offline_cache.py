# file: services/offline_cache.py
"""
In-memory Cache Storage for the offline layer.

Named caches map a request URL to a stored response, the same shape the
browser's Cache API gives a service worker. Nothing here survives a restart.
"""

from collections import OrderedDict
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Union

import httpx


RequestLike = Union[httpx.Request, httpx.URL, str]
Fetch = Callable[[httpx.Request], Awaitable[httpx.Response]]

# Stored bodies are already decoded, so these would no longer describe them
_STALE_HEADERS = {"content-encoding", "content-length", "transfer-encoding"}


def cache_key(request: RequestLike) -> str:
    url = request.url if isinstance(request, httpx.Request) else httpx.URL(str(request))
    return str(url.copy_with(fragment=None))


def is_get(request: RequestLike) -> bool:
    # Bare URLs stand for GET requests
    return not isinstance(request, httpx.Request) or request.method == "GET"


def clone_response(response: httpx.Response, request: Optional[httpx.Request] = None) -> httpx.Response:
    """Copies a response whose body has been read, so cached entries are never handed out twice."""
    headers = [(k, v) for k, v in response.headers.multi_items() if k.lower() not in _STALE_HEADERS]
    clone = httpx.Response(
        status_code=response.status_code,
        headers=headers,
        content=response.content,
    )
    if request is not None:
        clone.request = request
    return clone


class CacheError(Exception):
    pass


class Cache:
    def __init__(self, name: str):
        self.name = name
        self._entries: "OrderedDict[str, httpx.Response]" = OrderedDict()

    def __len__(self):
        return len(self._entries)

    async def match(self, request: RequestLike) -> Optional[httpx.Response]:
        """Only GET requests ever match."""
        if not is_get(request):
            return None
        entry = self._entries.get(cache_key(request))
        if entry is None:
            return None
        return clone_response(entry, request if isinstance(request, httpx.Request) else None)

    async def put(self, request: RequestLike, response: httpx.Response):
        if not is_get(request):
            raise CacheError(f"Request method '{request.method}' is unsupported")
        await response.aread()
        self._entries[cache_key(request)] = clone_response(response)

    async def delete(self, request: RequestLike) -> bool:
        return self._entries.pop(cache_key(request), None) is not None

    def keys(self) -> List[str]:
        return list(self._entries.keys())

    async def add(self, url: RequestLike, fetch: Fetch):
        await self.add_all([url], fetch)

    async def add_all(self, urls: Iterable[RequestLike], fetch: Fetch):
        """
        Fetches every URL and stores them all, or stores nothing.
        Raises CacheError when any fetch fails or answers with a non-2xx status.
        """
        fetched = []
        for url in urls:
            request = url if isinstance(url, httpx.Request) else httpx.Request("GET", str(url))
            try:
                response = await fetch(request)
                await response.aread()
            except httpx.TransportError as e:
                raise CacheError(f"Request for {request.url} failed: {e}") from e
            if not response.is_success:
                raise CacheError(f"Request for {request.url} returned {response.status_code}")
            fetched.append((request, response))

        for request, response in fetched:
            await self.put(request, response)


class CacheStorage:
    def __init__(self):
        self._caches: Dict[str, Cache] = OrderedDict()

    async def open(self, name: str) -> Cache:
        if name not in self._caches:
            self._caches[name] = Cache(name)
        return self._caches[name]

    async def delete(self, name: str) -> bool:
        return self._caches.pop(name, None) is not None

    async def keys(self) -> List[str]:
        return list(self._caches.keys())

    async def match(self, request: RequestLike) -> Optional[httpx.Response]:
        """Looks through every cache, oldest first, like caches.match()."""
        for cache in self._caches.values():
            response = await cache.match(request)
            if response is not None:
                return response
        return None
