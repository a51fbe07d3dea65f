# file: services/service_worker.py
"""
Offline request layer and push handling for the dashboard client.

`ServiceWorker` follows the browser worker's event model: install and
activate manage the caches, `handle_fetch` routes every request to one of
three strategies, and `handle_push` / `handle_notification_click` turn push
payloads into shown notifications and clicks into navigation. Wrap it in
`OfflineTransport` to give any httpx.AsyncClient the same offline behaviour.
"""

import asyncio
import json
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from app.config import APP_ORIGIN
from app.services.offline_cache import CacheError, CacheStorage

logger = logging.getLogger(__name__)

CACHE_NAME = "paper-slay-v1"
STATIC_CACHE_NAME = "paper-slay-static-v1"
DYNAMIC_CACHE_NAME = "paper-slay-dynamic-v1"
CURRENT_CACHES = {CACHE_NAME, STATIC_CACHE_NAME, DYNAMIC_CACHE_NAME}

STATIC_ASSETS = [
    "/",
    "/manifest.json",
    "/pwa-192x192.png",
    "/pwa-512x512.png",
    "/apple-touch-icon.png",
]
FALLBACK_ASSET = "/manifest.json"

API_CACHE_PATTERNS = [
    re.compile(r"^/api/user$"),
    re.compile(r"^/api/tasks$"),
    re.compile(r"^/api/teams$"),
    re.compile(r"^/api/users$"),
]

NAVIGATION_TIMEOUT_SECONDS = 3.0
NOTIFICATION_SYNC_TAG = "notification-sync"

OFFLINE_PAGE = """<!DOCTYPE html>
<html>
  <head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>TaskManager - Offline</title>
    <style>
      body { font-family: -apple-system, BlinkMacSystemFont, sans-serif; margin: 0; padding: 20px;
             text-align: center; background: #f8fafc; }
      .offline-container { max-width: 400px; margin: 100px auto; padding: 40px 20px; background: white;
                           border-radius: 12px; box-shadow: 0 4px 12px rgba(0,0,0,0.1); }
    </style>
  </head>
  <body>
    <div class="offline-container">
      <h1>You're Offline</h1>
      <p>Paper Slay works offline, but some features may be limited.</p>
      <button onclick="window.location.reload()">Try Again</button>
    </div>
  </body>
</html>
"""

DEFAULT_NOTIFICATION = {
    "title": "Paper Slay Notification",
    "body": "You have a new notification",
    "icon": "/icon-192.png",
    "badge": "/icon-192.png",
}
NOTIFICATION_ACTIONS = [
    {"action": "view", "title": "View Task", "icon": "/icon-32.png"},
    {"action": "mark-read", "title": "Mark as Read", "icon": "/icon-32.png"},
]


def json_error(message: str, status_code: int = 503) -> httpx.Response:
    return httpx.Response(status_code, json={"error": message})


def is_navigation(request: httpx.Request) -> bool:
    if request.extensions.get("mode") == "navigate":
        return True
    return request.headers.get("sec-fetch-mode") == "navigate"


def is_cacheable_api(path: str) -> bool:
    return any(pattern.match(path) for pattern in API_CACHE_PATTERNS)


class WindowClient:
    """An open dashboard tab as the worker sees it."""

    def __init__(self, url: str):
        self.url = url
        self.focused = False
        self.messages: List[Dict[str, Any]] = []

    async def focus(self):
        self.focused = True
        return self

    async def post_message(self, message: Dict[str, Any]):
        self.messages.append(message)


class Clients:
    def __init__(self):
        self._clients: List[WindowClient] = []

    def add(self, client: WindowClient) -> WindowClient:
        self._clients.append(client)
        return client

    async def match_all(self) -> List[WindowClient]:
        return list(self._clients)

    async def open_window(self, url: str) -> WindowClient:
        return self.add(WindowClient(url))


class ServiceWorker:
    def __init__(
            self,
            network: Optional[httpx.AsyncBaseTransport] = None,
            origin: str = APP_ORIGIN,
            caches: Optional[CacheStorage] = None,
            clients: Optional[Clients] = None,
            navigation_timeout: float = NAVIGATION_TIMEOUT_SECONDS,
            show_notification: Optional[Callable[[str, Dict[str, Any]], Any]] = None,
    ):
        self.network = network or httpx.AsyncHTTPTransport()
        self.origin = httpx.URL(origin)
        self.caches = caches or CacheStorage()
        self.clients = clients or Clients()
        self.navigation_timeout = navigation_timeout
        self.online = True
        self.skip_waiting = False
        self.shown_notifications: List[Dict[str, Any]] = []
        self._show_notification = show_notification
        # Best effort only: lost whenever the worker restarts
        self.notification_queue: List[Dict[str, Any]] = []

    def url_for(self, path: str) -> httpx.URL:
        return self.origin.join(path)

    def is_same_origin(self, url: httpx.URL) -> bool:
        return (url.scheme, url.host, url.port) == (self.origin.scheme, self.origin.host, self.origin.port)

    async def fetch(self, request: httpx.Request) -> httpx.Response:
        response = await self.network.handle_async_request(request)
        await response.aread()
        return response

    # --- lifecycle ---

    async def install(self) -> List[str]:
        """Precaches the app shell. Returns the URLs that ended up in the static cache."""
        cache = await self.caches.open(STATIC_CACHE_NAME)
        try:
            await cache.add_all([self.url_for(path) for path in STATIC_ASSETS], self.fetch)
            logger.info("Service worker: cached static assets")
        except CacheError as e:
            logger.warning(f"Some assets failed to cache: {e}")
            try:
                await cache.add(self.url_for(FALLBACK_ASSET), self.fetch)
            except CacheError as e:
                logger.error(f"Could not cache {FALLBACK_ASSET}: {e}")
        self.skip_waiting = True
        return cache.keys()

    async def activate(self) -> List[str]:
        """Deletes caches left behind by older versions. Returns the deleted names."""
        deleted = []
        for name in await self.caches.keys():
            if name not in CURRENT_CACHES:
                logger.info(f"Service worker: deleting old cache {name}")
                await self.caches.delete(name)
                deleted.append(name)
        return deleted

    # --- fetch routing ---

    async def handle_fetch(self, request: httpx.Request) -> httpx.Response:
        if not self.is_same_origin(request.url):
            return await self.fetch(request)
        if request.url.path.startswith("/api/"):
            return await self.handle_api_request(request)
        if is_navigation(request):
            return await self.handle_navigation_request(request)
        return await self.handle_static_asset(request)

    async def handle_api_request(self, request: httpx.Request) -> httpx.Response:
        """Network first for allow-listed GET endpoints, straight to the network for the rest."""
        if not is_cacheable_api(request.url.path):
            try:
                return await self.fetch(request)
            except httpx.TransportError:
                return json_error("Network error")

        try:
            response = await self.fetch(request)
            if response.is_success and request.method == "GET":
                cache = await self.caches.open(DYNAMIC_CACHE_NAME)
                await cache.put(request, response)
            return response
        except httpx.TransportError:
            cached = await self.caches.match(request)
            if cached is not None:
                return cached
            return json_error("Offline - cached data not available")

    async def handle_navigation_request(self, request: httpx.Request) -> httpx.Response:
        """Network first with a timeout, then the cached app shell, then the offline page."""
        try:
            return await asyncio.wait_for(self.fetch(request), timeout=self.navigation_timeout)
        except (httpx.TransportError, asyncio.TimeoutError):
            cache = await self.caches.open(STATIC_CACHE_NAME)
            cached = await cache.match(self.url_for("/"))
            if cached is not None:
                return cached
            return httpx.Response(200, headers={"Content-Type": "text/html"}, text=OFFLINE_PAGE)

    async def handle_static_asset(self, request: httpx.Request) -> httpx.Response:
        """Cache first; the network is only touched on a miss."""
        cached = await self.caches.match(request)
        if cached is not None:
            return cached

        try:
            response = await self.fetch(request)
            if response.is_success and request.method == "GET":
                cache = await self.caches.open(STATIC_CACHE_NAME)
                await cache.put(request, response)
            return response
        except httpx.TransportError:
            return httpx.Response(503, text="Resource not available offline")

    # --- push ---

    @staticmethod
    def parse_push_payload(raw: Optional[bytes]) -> Dict[str, Any]:
        """Reads a push message, keeping the defaults for anything missing or unreadable."""
        notification = dict(DEFAULT_NOTIFICATION)
        notification["data"] = {"taskId": None, "type": "general"}
        if not raw:
            return notification

        try:
            payload = json.loads(raw)
            if not isinstance(payload, dict):
                raise ValueError("push payload is not an object")
        except ValueError as e:
            logger.error(f"Error parsing push payload: {e}")
            return notification

        data = payload.get("data") or {}
        notification.update({
            "title": payload.get("title") or DEFAULT_NOTIFICATION["title"],
            "body": payload.get("body") or payload.get("message") or DEFAULT_NOTIFICATION["body"],
            "icon": payload.get("icon") or DEFAULT_NOTIFICATION["icon"],
            "badge": payload.get("badge") or DEFAULT_NOTIFICATION["badge"],
            "data": {
                "taskId": data.get("taskId") or None,
                "type": data.get("type") or "general",
                "url": data.get("url") or "/",
                "notificationId": data.get("notificationId") or None,
            },
        })
        return notification

    @staticmethod
    def notification_options(notification: Dict[str, Any]) -> Dict[str, Any]:
        task_id = notification["data"].get("taskId")
        return {
            "body": notification["body"],
            "icon": notification["icon"],
            "badge": notification["badge"],
            "data": notification["data"],
            "tag": f"task-{task_id}" if task_id else "general",
            "requireInteraction": True,
            "vibrate": [200, 100, 200],
            "actions": NOTIFICATION_ACTIONS,
        }

    async def show_notification(self, title: str, options: Dict[str, Any]):
        if self._show_notification is not None:
            result = self._show_notification(title, options)
            if asyncio.iscoroutine(result):
                await result
        self.shown_notifications.append({"title": title, **options})

    async def handle_push(self, raw: Optional[bytes]) -> Optional[Dict[str, Any]]:
        notification = self.parse_push_payload(raw)
        try:
            await self.show_notification(notification["title"], self.notification_options(notification))
        except Exception as e:
            logger.error(f"Error showing notification: {e}")
            return None
        self.notification_queue.append({**notification, "timestamp": int(time.time() * 1000)})
        return notification

    # --- notification clicks ---

    @staticmethod
    def click_target(data: Dict[str, Any]) -> str:
        if data.get("taskId"):
            return f"/tasks?taskId={data['taskId']}"
        return data.get("url") or "/"

    async def handle_notification_click(self, data: Optional[Dict[str, Any]], action: str = "") -> Optional[str]:
        """
        Routes a click on a shown notification. Returns the URL navigated to,
        or None for the mark-read action.
        """
        data = data or {}
        if action == "mark-read":
            await self.mark_notification_as_read(data.get("notificationId"))
            return None

        target = self.click_target(data)
        try:
            for client in await self.clients.match_all():
                if self.is_same_origin(httpx.URL(client.url)):
                    await client.focus()
                    await client.post_message({"type": "NAVIGATE", "url": target, "notificationData": data})
                    return target
            await self.clients.open_window(str(self.url_for(target)))
        except Exception as e:
            logger.error(f"Error handling notification click: {e}")
        return target

    async def mark_notification_as_read(self, notification_id: Optional[int]) -> bool:
        if not notification_id:
            return False
        request = httpx.Request("PATCH", self.url_for(f"/api/notifications/{notification_id}/read"))
        try:
            response = await self.fetch(request)
        except httpx.TransportError as e:
            logger.error(f"Error marking notification as read: {e}")
            return False
        if not response.is_success:
            return False

        for client in await self.clients.match_all():
            await client.post_message({"type": "NOTIFICATION_READ", "notificationId": notification_id})
        return True

    # --- background sync & messages ---

    async def handle_sync(self, tag: str) -> List[Dict[str, Any]]:
        """Drains the notification queue, then refreshes the list when online."""
        if tag != NOTIFICATION_SYNC_TAG:
            return []
        queue, self.notification_queue = self.notification_queue, []
        for notification in queue:
            logger.debug(f"Processing queued notification: {notification.get('title')}")

        if self.online:
            try:
                response = await self.fetch(httpx.Request("GET", self.url_for("/api/notifications")))
                if response.is_success:
                    logger.info("Notifications synced successfully")
            except httpx.TransportError as e:
                logger.error(f"Error syncing notifications: {e}")
        return queue

    async def handle_message(self, message: Optional[Dict[str, Any]]):
        message_type = (message or {}).get("type")
        if message_type == "SKIP_WAITING":
            self.skip_waiting = True
        elif message_type in ("NOTIFICATION_PERMISSION_GRANTED", "REGISTER_PUSH_SUBSCRIPTION"):
            logger.info(f"Service worker message: {message_type}")
        else:
            logger.warning(f"Unknown message type: {message_type}")


class OfflineTransport(httpx.AsyncBaseTransport):
    """httpx transport that sends every request through a ServiceWorker."""

    def __init__(self, worker: ServiceWorker):
        self.worker = worker

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        return await self.worker.handle_fetch(request)

    async def aclose(self):
        await self.worker.network.aclose()
