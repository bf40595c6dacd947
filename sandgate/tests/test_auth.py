import asyncio
import json
import time
import unittest

import httpx
import jwt
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from sandgate.auth import AccessGate, HttpKeyFetcher, KeySetCache
from sandgate.errors import Expired, KeySetUnavailable, Malformed, Unauthorized

AUDIENCE = "sandgate-test"
ISSUER = "https://team.example.com"


def _private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _jwk(private_key, kid):
    jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk["kid"] = kid
    jwk["alg"] = "RS256"
    jwk["use"] = "sig"
    return jwk


def _token(private_key, kid, **overrides):
    now = int(time.time())
    claims = {
        "sub": "user-1",
        "email": "user@example.com",
        "aud": AUDIENCE,
        "iss": ISSUER,
        "iat": now,
        "exp": now + 300,
    }
    claims.update(overrides)
    return jwt.encode(claims, private_key, algorithm="RS256", headers={"kid": kid})


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FakeFetcher:
    def __init__(self, keys):
        self.keys = list(keys)
        self.calls = 0
        self.fail = False

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(0)
        if self.fail:
            raise httpx.ConnectError("jwks endpoint down")
        return {"keys": self.keys}


class AccessGateTests(unittest.IsolatedAsyncioTestCase):
    @classmethod
    def setUpClass(cls):
        cls.key = _private_key()
        cls.other_key = _private_key()

    def setUp(self):
        self.clock = FakeClock()
        self.fetcher = FakeFetcher([_jwk(self.key, "k1")])
        self.cache = KeySetCache(
            self.fetcher, ttl=300, grace=600, min_refresh_interval=30, clock=self.clock
        )
        self.gate = AccessGate(self.cache, audience=AUDIENCE, issuer=ISSUER)

    async def test_valid_token_yields_identity(self):
        identity = await self.gate.verify(_token(self.key, "k1"))

        self.assertEqual(identity.subject, "user-1")
        self.assertEqual(identity.email, "user@example.com")
        self.assertFalse(identity.bypassed)

    async def test_missing_token_is_unauthorized(self):
        with self.assertRaises(Unauthorized):
            await self.gate.verify(None)

    async def test_expired_token(self):
        past = int(time.time()) - 600
        with self.assertRaises(Expired):
            await self.gate.verify(_token(self.key, "k1", iat=past - 60, exp=past))

    async def test_malformed_tokens(self):
        for token in ("not-a-jwt", "a.b.c", "...."):
            with self.subTest(token=token):
                with self.assertRaises(Malformed):
                    await self.gate.verify(token)

    async def test_wrong_signing_key_is_unauthorized(self):
        with self.assertRaises(Unauthorized):
            await self.gate.verify(_token(self.other_key, "k1"))

    async def test_wrong_audience_is_unauthorized(self):
        with self.assertRaises(Unauthorized):
            await self.gate.verify(_token(self.key, "k1", aud="someone-else"))

    async def test_unknown_key_id_refreshes_for_rotation(self):
        await self.gate.verify(_token(self.key, "k1"))
        self.fetcher.keys.append(_jwk(self.other_key, "k2"))
        self.clock.now += 60

        identity = await self.gate.verify(_token(self.other_key, "k2"))

        self.assertEqual(identity.subject, "user-1")
        self.assertEqual(self.fetcher.calls, 2)

    async def test_unknown_key_refresh_is_rate_limited(self):
        await self.gate.verify(_token(self.key, "k1"))

        with self.assertRaises(Unauthorized):
            await self.gate.verify(_token(self.other_key, "k9"))
        self.assertEqual(self.fetcher.calls, 1)

    async def test_concurrent_refreshes_share_one_fetch(self):
        tokens = [_token(self.key, "k1") for _ in range(5)]

        identities = await asyncio.gather(*(self.gate.verify(t) for t in tokens))

        self.assertEqual(len(identities), 5)
        self.assertEqual(self.fetcher.calls, 1)

    async def test_stale_keys_trusted_within_grace_window(self):
        token = _token(self.key, "k1")
        await self.gate.verify(token)
        self.fetcher.fail = True

        self.clock.now += 400
        identity = await self.gate.verify(token)
        self.assertEqual(identity.subject, "user-1")

        self.clock.now += 550
        with self.assertRaises(KeySetUnavailable):
            await self.gate.verify(token)

    async def test_failed_refresh_is_not_retried_on_every_request(self):
        token = _token(self.key, "k1")
        await self.gate.verify(token)
        self.fetcher.fail = True
        self.clock.now += 400

        for _ in range(10):
            identity = await self.gate.verify(token)
            self.assertEqual(identity.subject, "user-1")
        self.assertEqual(self.fetcher.calls, 2)

        self.clock.now += 31
        await self.gate.verify(token)
        self.assertEqual(self.fetcher.calls, 3)

    async def test_no_keys_at_all_is_unavailable(self):
        self.fetcher.fail = True
        with self.assertRaises(KeySetUnavailable):
            await self.gate.verify(_token(self.key, "k1"))

    async def test_bypass_skips_verification(self):
        gate = AccessGate(None, bypass=True)

        identity = await gate.verify(None)

        self.assertTrue(identity.bypassed)

    async def test_http_fetcher_reads_jwks(self):
        def handler(request):
            self.assertEqual(request.url.path, "/cdn-cgi/access/certs")
            return httpx.Response(200, json={"keys": [_jwk(self.key, "k1")]})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = HttpKeyFetcher(client, "https://team.example.com/cdn-cgi/access/certs")
            gate = AccessGate(KeySetCache(fetcher), audience=AUDIENCE, issuer=ISSUER)
            identity = await gate.verify(_token(self.key, "k1"))

        self.assertEqual(identity.email, "user@example.com")


class TokenExtractionTests(unittest.TestCase):
    def setUp(self):
        self.gate = AccessGate(None, bypass=True)

    def test_configured_header_wins(self):
        headers = {"cf-access-jwt-assertion": "from-header", "authorization": "Bearer other"}
        self.assertEqual(self.gate.extract_token(headers, {}), "from-header")

    def test_bearer_authorization(self):
        self.assertEqual(self.gate.extract_token({"authorization": "Bearer abc"}, {}), "abc")
        self.assertIsNone(self.gate.extract_token({"authorization": "Basic abc"}, {}))

    def test_cookie_fallback(self):
        self.assertEqual(self.gate.extract_token({}, {"CF_Authorization": "cookie"}), "cookie")

    def test_credential_headers(self):
        self.assertEqual(
            self.gate.credential_headers({"authorization": "Bearer abc"}),
            {"cf-access-jwt-assertion", "authorization"},
        )
        self.assertEqual(
            self.gate.credential_headers({"authorization": "Basic abc"}),
            {"cf-access-jwt-assertion"},
        )


if __name__ == "__main__":
    unittest.main()
