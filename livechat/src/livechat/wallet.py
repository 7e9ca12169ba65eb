"""Wallet/tip gateway client and the cached wallet session used by tipping."""

from __future__ import annotations

import json
import logging
import urllib.parse
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import aiohttp

from .config import WalletConfig
from .errors import WalletError, WalletUnauthorized

logger = logging.getLogger(__name__)

_TOKEN_KEYS = ("token", "accessToken", "bearerToken")


class WalletApi(Protocol):
    async def get_bearer_token(self, user_id: str, room_id: str, username: str) -> Optional[str]:
        ...

    async def get_balance(self, user_id: str, token: Optional[str]) -> float:
        ...

    async def send_tip(
        self,
        token: str,
        amount: float,
        recipient_id: str,
        recipient_name: str,
        room_id: str,
    ) -> Dict[str, Any]:
        ...


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _extract_token(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    for source in (data, payload):
        if not isinstance(source, dict):
            continue
        for key in _TOKEN_KEYS:
            value = source.get(key)
            if isinstance(value, str) and value:
                return value
    return None


def _extract_balance(payload: Any) -> float:
    if not isinstance(payload, dict):
        return 0.0
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("balance"), (int, float)):
        return float(data["balance"])
    if isinstance(payload.get("balance"), (int, float)):
        return float(payload["balance"])
    return 0.0


def display_name(payload: Any) -> Optional[str]:
    """Pick a display name from a user record: full name, username, then email prefix."""

    if not isinstance(payload, dict):
        return None
    user = payload.get("data", payload)
    if isinstance(user, dict) and isinstance(user.get("data"), dict):
        user = user["data"]
    if not isinstance(user, dict):
        return None
    first = user.get("firstName")
    if isinstance(first, str) and first:
        last = user.get("lastName")
        return f"{first} {last}".strip() if isinstance(last, str) and last else first
    username = user.get("username")
    if isinstance(username, str) and username:
        return username
    email = user.get("email")
    if isinstance(email, str) and email:
        return email.split("@")[0]
    return None


class GatewayWalletApi:
    """``WalletApi`` over the HTTP API gateway."""

    def __init__(self, config: WalletConfig, *, http_session: aiohttp.ClientSession | None = None) -> None:
        self._config = config
        self._http_session = http_session
        self._owns_http_session = http_session is None

    def _session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession()
            self._owns_http_session = True
        return self._http_session

    async def close(self) -> None:
        if self._owns_http_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    def _headers(self, token: Optional[str] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._config.api_key:
            headers["x-api-key"] = self._config.api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        action: str,
        token: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = _build_url(self._config.base_url, path)
        async with self._session().request(method, url, json=payload, headers=self._headers(token)) as response:
            raw = await response.text()
            if response.status == 401:
                raise WalletUnauthorized(response.status, raw, action=action)
            if response.status >= 400:
                raise WalletError(response.status, raw, action=action)
            if not raw:
                return {}
            try:
                parsed = json.loads(raw)
            except ValueError as exc:
                raise WalletError(response.status, raw, action=action) from exc
        return parsed if isinstance(parsed, dict) else {"data": parsed}

    async def get_bearer_token(self, user_id: str, room_id: str, username: str) -> Optional[str]:
        payload = {"userId": user_id, "roomId": room_id, "username": username}
        response = await self._request("POST", "/v1/auth/token", action="token", payload=payload)
        token = _extract_token(response)
        if token is None:
            logger.warning("token response carried no token")
        return token

    async def get_balance(self, user_id: str, token: Optional[str]) -> float:
        path = f"/v1/wallets/balance/{urllib.parse.quote(user_id, safe='')}"
        response = await self._request("GET", path, action="balance", token=token)
        return _extract_balance(response)

    async def send_tip(
        self,
        token: str,
        amount: float,
        recipient_id: str,
        recipient_name: str,
        room_id: str,
    ) -> Dict[str, Any]:
        payload = {
            "recipientId": recipient_id,
            "recipientName": recipient_name,
            "amount": amount,
            "roomId": room_id,
        }
        return await self._request("POST", "/v1/wallets/tip", action="tip", token=token, payload=payload)

    async def get_user_name(self, user_id: str, token: str) -> Optional[str]:
        path = f"/v1/user/{urllib.parse.quote(user_id, safe='')}"
        response = await self._request("GET", path, action="user", token=token)
        return display_name(response)


@dataclass(frozen=True)
class TipResult:
    ok: bool
    reason: str = ""
    response: Optional[Dict[str, Any]] = None


class WalletSession:
    """Caches the bearer token and balance for one identity."""

    def __init__(self, api: WalletApi, *, user_id: str, room_id: str, username: str) -> None:
        self.api = api
        self.user_id = user_id
        self.room_id = room_id
        self.username = username
        self.token: Optional[str] = None
        self.balance: Optional[float] = None

    async def fetch_token(self) -> Optional[str]:
        try:
            token = await self.api.get_bearer_token(self.user_id, self.room_id, self.username)
        except (WalletError, aiohttp.ClientError, OSError) as exc:
            logger.warning("failed to fetch bearer token: %s", exc)
            return None
        self.token = token
        return token

    async def ensure_token(self) -> Optional[str]:
        if self.token:
            return self.token
        return await self.fetch_token()

    async def refresh_balance(self) -> Optional[float]:
        """Refresh the cached balance; on 401 without a token, fetch one and retry once."""

        had_token = self.token is not None
        try:
            self.balance = await self.api.get_balance(self.user_id, self.token)
            return self.balance
        except WalletUnauthorized:
            if had_token or await self.fetch_token() is None:
                logger.warning("wallet balance unauthorized")
                return self.balance
        except (WalletError, aiohttp.ClientError, OSError) as exc:
            logger.warning("failed to refresh wallet balance: %s", exc)
            return self.balance
        try:
            self.balance = await self.api.get_balance(self.user_id, self.token)
        except (WalletError, aiohttp.ClientError, OSError) as exc:
            logger.warning("failed to refresh wallet balance after token fetch: %s", exc)
        return self.balance

    async def send_tip(self, amount: float, recipient_id: str, recipient_name: str) -> TipResult:
        """Confirm a tip with the gateway, retrying once with a fresh token on 401."""

        token = await self.ensure_token()
        if not token:
            return TipResult(ok=False, reason="no bearer token available")
        try:
            response = await self.api.send_tip(token, amount, recipient_id, recipient_name, self.room_id)
        except WalletUnauthorized:
            logger.warning("tip unauthorized, refreshing bearer token")
            fresh = await self.fetch_token()
            if not fresh:
                return TipResult(ok=False, reason="unauthorized")
            try:
                response = await self.api.send_tip(fresh, amount, recipient_id, recipient_name, self.room_id)
            except (WalletError, aiohttp.ClientError, OSError) as exc:
                logger.warning("tip failed after token refresh: %s", exc)
                return TipResult(ok=False, reason=str(exc))
        except (WalletError, aiohttp.ClientError, OSError) as exc:
            logger.warning("tip failed: %s", exc)
            return TipResult(ok=False, reason=str(exc))
        await self.refresh_balance()
        return TipResult(ok=True, response=response)
