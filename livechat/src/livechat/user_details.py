"""Cached user-profile lookups for names and avatars shown next to messages."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

import aiohttp

from .errors import UserDetailsError

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DURATION_S = 300.0


@dataclass
class _CacheEntry:
    data: Dict[str, Any]
    fetched_at: float


class UserDetailsClient:
    """POSTs ``{"id": user_id}`` to ``endpoint`` and caches the answer.

    Concurrent lookups of one user share a single request. Entries expire
    after ``cache_duration_s``.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        *,
        cache_duration_s: float = DEFAULT_CACHE_DURATION_S,
        http_session: aiohttp.ClientSession | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._endpoint = endpoint
        self._api_key = api_key
        self._cache_duration_s = cache_duration_s
        self._http_session = http_session
        self._owns_http_session = http_session is None
        self._clock = clock
        self._cache: Dict[str, _CacheEntry] = {}
        self._pending: Dict[str, asyncio.Task] = {}

    def _session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession()
            self._owns_http_session = True
        return self._http_session

    async def close(self) -> None:
        for task in self._pending.values():
            task.cancel()
        self._pending.clear()
        if self._owns_http_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    def cached(self, user_id: str) -> Optional[Dict[str, Any]]:
        entry = self._cache.get(user_id)
        if entry is None or self._clock() - entry.fetched_at >= self._cache_duration_s:
            return None
        return entry.data

    async def get(self, user_id: str, force: bool = False) -> Dict[str, Any]:
        """Return details for ``user_id``; raises ``UserDetailsError`` on HTTP failure."""

        if not force:
            hit = self.cached(user_id)
            if hit is not None:
                return hit
        task = self._pending.get(user_id)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._fetch(user_id))
            self._pending[user_id] = task
            task.add_done_callback(lambda _t, key=user_id: self._forget(key, _t))
        return await asyncio.shield(task)

    def _forget(self, user_id: str, task: asyncio.Task) -> None:
        if self._pending.get(user_id) is task:
            del self._pending[user_id]

    async def _fetch(self, user_id: str) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json", "X-API-KEY": self._api_key}
        async with self._session().post(self._endpoint, json={"id": user_id}, headers=headers) as response:
            if response.status >= 400:
                raise UserDetailsError(user_id, response.status, await response.text())
            data = await response.json(content_type=None)
        if not isinstance(data, dict):
            data = {"data": data}
        self._cache[user_id] = _CacheEntry(data=data, fetched_at=self._clock())
        return data

    async def get_many(self, user_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Look up several users; failures are logged and left out of the result."""

        unique = list(dict.fromkeys(user_ids))
        outcomes = await asyncio.gather(*(self.get(user_id) for user_id in unique), return_exceptions=True)
        results: Dict[str, Dict[str, Any]] = {}
        for user_id, outcome in zip(unique, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.warning("failed to fetch user details for %s: %s", user_id, outcome)
                continue
            results[user_id] = outcome
        return results

    def invalidate(self, user_id: str | None = None) -> None:
        if user_id is None:
            self._cache.clear()
            return
        self._cache.pop(user_id, None)
