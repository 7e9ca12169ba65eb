import importlib.util
import unittest

_aiohttp_spec = importlib.util.find_spec("aiohttp")
if _aiohttp_spec is None:
    raise RuntimeError("aiohttp must be installed for livechat wallet tests")

from livechat.config import WalletConfig
from livechat.errors import WalletError, WalletUnauthorized
from livechat.wallet import GatewayWalletApi, WalletSession, _extract_balance, _extract_token, display_name

from .fake_service import FakeWalletApi, FakeWalletGateway


class ExtractionTests(unittest.TestCase):
    def test_token_lookup_order(self):
        self.assertEqual(_extract_token({"data": {"accessToken": "a"}, "token": "b"}), "a")
        self.assertEqual(_extract_token({"bearerToken": "c"}), "c")
        self.assertIsNone(_extract_token({"data": {"token": ""}}))
        self.assertIsNone(_extract_token(["token"]))

    def test_balance_lookup(self):
        self.assertEqual(_extract_balance({"data": {"balance": 12}}), 12.0)
        self.assertEqual(_extract_balance({"balance": 3.5}), 3.5)
        self.assertEqual(_extract_balance({"data": {}}), 0.0)

    def test_display_name(self):
        self.assertEqual(display_name({"data": {"firstName": "Ada", "lastName": "Lovelace"}}), "Ada Lovelace")
        self.assertEqual(display_name({"data": {"data": {"username": "ada"}}}), "ada")
        self.assertEqual(display_name({"email": "ada@example.com"}), "ada")
        self.assertIsNone(display_name({}))


class GatewayWalletApiTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.gateway = await FakeWalletGateway(balance=100.0).start()
        self.api = GatewayWalletApi(WalletConfig(base_url=self.gateway.base_url, api_key="wallet-key"))

    async def asyncTearDown(self) -> None:
        await self.api.close()
        await self.gateway.close()

    async def test_token_balance_and_tip_round_trip(self):
        token = await self.api.get_bearer_token("u1", "lobby", "Alice")
        balance = await self.api.get_balance("u1", token)
        response = await self.api.send_tip(token, 10, "u2", "Bob", "lobby")

        self.assertEqual(token, "tok-1")
        self.assertEqual(balance, 100.0)
        self.assertEqual(response["data"]["amount"], 10)
        self.assertEqual(self.gateway.balance, 90.0)

        method, path, headers, body = self.gateway.requests[0]
        self.assertEqual((method, path), ("POST", "/v1/auth/token"))
        self.assertEqual(body, {"userId": "u1", "roomId": "lobby", "username": "Alice"})
        self.assertEqual(headers["x-api-key"], "wallet-key")

        _, path, headers, body = self.gateway.requests[2]
        self.assertEqual(path, "/v1/wallets/tip")
        self.assertEqual(headers["Authorization"], "Bearer tok-1")
        self.assertEqual(body, {"recipientId": "u2", "recipientName": "Bob", "amount": 10, "roomId": "lobby"})

    async def test_unauthorized_raises_dedicated_error(self):
        with self.assertRaises(WalletUnauthorized) as ctx:
            await self.api.get_balance("u1", "bogus")
        self.assertEqual(ctx.exception.status, 401)

    async def test_server_errors_raise_wallet_error(self):
        self.gateway.tip_statuses.append(500)
        with self.assertRaises(WalletError) as ctx:
            await self.api.send_tip("tok-1", 10, "u2", "Bob", "lobby")
        self.assertNotIsInstance(ctx.exception, WalletUnauthorized)
        self.assertEqual(ctx.exception.status, 500)
        self.assertEqual(ctx.exception.action, "tip")

    async def test_user_name(self):
        self.assertEqual(await self.api.get_user_name("u2", "tok-1"), "Ada Lovelace")
        self.assertEqual(self.gateway.paths()[-1], "/v1/user/u2")


class WalletSessionGatewayTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.gateway = await FakeWalletGateway(balance=100.0).start()
        self.api = GatewayWalletApi(WalletConfig(base_url=self.gateway.base_url))
        self.session = WalletSession(self.api, user_id="u1", room_id="lobby", username="Alice")

    async def asyncTearDown(self) -> None:
        await self.api.close()
        await self.gateway.close()

    async def test_stale_token_is_refreshed_once_and_tip_retried(self):
        self.gateway.tokens = ["stale", "fresh"]
        self.gateway.valid_tokens = {"fresh"}

        with self.assertLogs("livechat.wallet", level="WARNING"):
            result = await self.session.send_tip(10, "u2", "Bob")

        self.assertTrue(result.ok)
        self.assertEqual(self.session.token, "fresh")
        self.assertEqual(self.session.balance, 90.0)
        self.assertEqual(
            self.gateway.paths(),
            [
                "/v1/auth/token",
                "/v1/wallets/tip",
                "/v1/auth/token",
                "/v1/wallets/tip",
                "/v1/wallets/balance/u1",
            ],
        )

    async def test_balance_without_token_fetches_one(self):
        balance = await self.session.refresh_balance()

        self.assertEqual(balance, 100.0)
        self.assertEqual(self.gateway.paths(), ["/v1/wallets/balance/u1", "/v1/auth/token", "/v1/wallets/balance/u1"])


class WalletSessionRetryTests(unittest.IsolatedAsyncioTestCase):
    async def test_second_unauthorized_fails_without_third_attempt(self):
        api = FakeWalletApi(
            tokens=["t1", "t2", "t3"],
            tip_errors=[WalletUnauthorized(401, action="tip"), WalletUnauthorized(401, action="tip")],
        )
        session = WalletSession(api, user_id="u1", room_id="lobby", username="Alice")

        with self.assertLogs("livechat.wallet", level="WARNING"):
            result = await session.send_tip(10, "u2", "Bob")

        self.assertFalse(result.ok)
        self.assertEqual(api.names().count("tip"), 2)
        self.assertNotIn("balance", api.names())

    async def test_unauthorized_without_fresh_token_fails(self):
        api = FakeWalletApi(tokens=["t1"], tip_errors=[WalletUnauthorized(401, action="tip")])
        session = WalletSession(api, user_id="u1", room_id="lobby", username="Alice")

        with self.assertLogs("livechat.wallet", level="WARNING"):
            result = await session.send_tip(10, "u2", "Bob")

        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "unauthorized")
        self.assertEqual(api.names(), ["token", "tip", "token"])

    async def test_cached_token_is_reused(self):
        api = FakeWalletApi(tokens=["t1", "t2"])
        session = WalletSession(api, user_id="u1", room_id="lobby", username="Alice")

        await session.send_tip(1, "u2", "Bob")
        await session.send_tip(2, "u2", "Bob")

        self.assertEqual(api.names().count("token"), 1)
        self.assertEqual([call[1] for call in api.calls if call[0] == "tip"], ["t1", "t1"])


if __name__ == "__main__":
    unittest.main()
