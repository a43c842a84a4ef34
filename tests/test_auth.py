from __future__ import annotations

import time

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwk, jwt

from config import Settings
from services.auth import InsecureLocalVerifier, JWKSVerifier, build_verifier
from services.errors import Unauthorized

ISSUER = "https://idp.example.com"
AUDIENCE = "chat-api"


def make_key(kid: str):
    private = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    public_pem = private.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    public_jwk = jwk.construct(public_pem, algorithm="RS256").to_dict()
    public_jwk.update({"kid": kid, "use": "sig"})
    return private_pem, public_jwk


def sign(private_pem, kid: str, **overrides) -> str:
    now = int(time.time())
    claims = {"sub": "user-42", "iss": ISSUER, "aud": AUDIENCE, "iat": now, "exp": now + 300}
    claims.update(overrides)
    return jwt.encode(claims, private_pem, algorithm="RS256", headers={"kid": kid})


class FakeIdentityProvider:
    """Serves a discovery document and a replaceable key set; counts key set fetches."""

    def __init__(self, keys, issuer: str = ISSUER):
        self.keys = list(keys)
        self.issuer = issuer
        self.jwks_fetches = 0
        self.down = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            return httpx.Response(503)
        if request.url.path == "/.well-known/openid-configuration":
            base = self.issuer.rstrip("/")
            return httpx.Response(200, json={"issuer": self.issuer, "jwks_uri": f"{base}/keys"})
        if request.url.path == "/keys":
            self.jwks_fetches += 1
            return httpx.Response(200, json={"keys": self.keys})
        return httpx.Response(404)

    def verifier(self, **kwargs) -> JWKSVerifier:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return JWKSVerifier(self.issuer, AUDIENCE, http_client=client, **kwargs)


@pytest.fixture(scope="module")
def signing_key():
    return make_key("key-1")


async def test_valid_token_is_accepted(signing_key):
    private_pem, public_jwk = signing_key
    verifier = FakeIdentityProvider([public_jwk]).verifier()

    user = await verifier.verify(sign(private_pem, "key-1"))

    assert user.user_id == "user-42"
    assert user.claims["aud"] == AUDIENCE


async def test_issuer_with_trailing_slash_is_matched_as_configured(signing_key):
    private_pem, public_jwk = signing_key
    issuer = "https://tenant.auth0.example/"
    idp = FakeIdentityProvider([public_jwk], issuer=issuer)
    verifier = idp.verifier()

    user = await verifier.verify(sign(private_pem, "key-1", iss=issuer))

    assert user.user_id == "user-42"
    assert idp.jwks_fetches == 1
    with pytest.raises(Unauthorized):
        await verifier.verify(sign(private_pem, "key-1", iss=issuer.rstrip("/")))


@pytest.mark.parametrize("overrides", [
    {"iss": "https://evil.example.com"},
    {"aud": "some-other-api"},
    {"exp": int(time.time()) - 60},
])
async def test_mutated_claims_are_rejected(signing_key, overrides):
    private_pem, public_jwk = signing_key
    verifier = FakeIdentityProvider([public_jwk]).verifier()

    with pytest.raises(Unauthorized):
        await verifier.verify(sign(private_pem, "key-1", **overrides))


async def test_foreign_signature_is_rejected(signing_key):
    _, public_jwk = signing_key
    attacker_pem, _ = make_key("key-1")
    verifier = FakeIdentityProvider([public_jwk]).verifier()

    with pytest.raises(Unauthorized):
        await verifier.verify(sign(attacker_pem, "key-1"))


async def test_tampered_payload_is_rejected(signing_key):
    private_pem, public_jwk = signing_key
    verifier = FakeIdentityProvider([public_jwk]).verifier()
    header, _, signature = sign(private_pem, "key-1").split(".")
    escalated = sign(private_pem, "key-1", sub="admin").split(".")[1]

    with pytest.raises(Unauthorized):
        await verifier.verify(".".join([header, escalated, signature]))


@pytest.mark.parametrize("token", [None, "", "not-a-jwt"])
async def test_missing_or_malformed_token_is_rejected(signing_key, token):
    verifier = FakeIdentityProvider([signing_key[1]]).verifier()

    with pytest.raises(Unauthorized):
        await verifier.verify(token)


async def test_token_without_subject_is_rejected(signing_key):
    private_pem, public_jwk = signing_key
    verifier = FakeIdentityProvider([public_jwk]).verifier()
    now = int(time.time())
    token = jwt.encode(
        {"iss": ISSUER, "aud": AUDIENCE, "exp": now + 300},
        private_pem, algorithm="RS256", headers={"kid": "key-1"},
    )

    with pytest.raises(Unauthorized):
        await verifier.verify(token)


@pytest.mark.parametrize("dropped", ["exp", "sub", "aud"])
async def test_missing_claim_is_rejected_without_refetching_keys(signing_key, dropped):
    private_pem, public_jwk = signing_key
    idp = FakeIdentityProvider([public_jwk])
    verifier = idp.verifier(min_refresh_interval=0)
    await verifier.verify(sign(private_pem, "key-1"))
    now = int(time.time())
    claims = {"sub": "user-42", "iss": ISSUER, "aud": AUDIENCE, "exp": now + 300}
    del claims[dropped]
    token = jwt.encode(claims, private_pem, algorithm="RS256", headers={"kid": "key-1"})

    with pytest.raises(Unauthorized):
        await verifier.verify(token)

    assert idp.jwks_fetches == 1


async def test_key_set_is_cached(signing_key):
    private_pem, public_jwk = signing_key
    idp = FakeIdentityProvider([public_jwk])
    verifier = idp.verifier()

    for _ in range(3):
        await verifier.verify(sign(private_pem, "key-1"))

    assert idp.jwks_fetches == 1


async def test_rotated_key_is_picked_up_by_refresh(signing_key):
    old_pem, old_jwk = signing_key
    new_pem, new_jwk = make_key("key-2")
    idp = FakeIdentityProvider([old_jwk])
    verifier = idp.verifier(min_refresh_interval=0)

    await verifier.verify(sign(old_pem, "key-1"))
    idp.keys = [old_jwk, new_jwk]
    user = await verifier.verify(sign(new_pem, "key-2"))

    assert user.user_id == "user-42"
    assert idp.jwks_fetches == 2


async def test_forced_refresh_is_throttled(signing_key):
    private_pem, public_jwk = signing_key
    idp = FakeIdentityProvider([public_jwk])
    verifier = idp.verifier(min_refresh_interval=60)
    await verifier.verify(sign(private_pem, "key-1"))

    for _ in range(3):
        with pytest.raises(Unauthorized):
            await verifier.verify(sign(private_pem, "unknown-kid"))

    assert idp.jwks_fetches == 1


async def test_stale_keys_are_used_when_provider_is_down(signing_key):
    private_pem, public_jwk = signing_key
    now = [1000.0]
    idp = FakeIdentityProvider([public_jwk])
    verifier = idp.verifier(cache_ttl=10, clock=lambda: now[0])
    await verifier.verify(sign(private_pem, "key-1"))

    idp.down = True
    now[0] += 60
    user = await verifier.verify(sign(private_pem, "key-1"))

    assert user.user_id == "user-42"


async def test_unreachable_provider_without_cache_rejects(signing_key):
    private_pem, public_jwk = signing_key
    idp = FakeIdentityProvider([public_jwk])
    idp.down = True
    verifier = idp.verifier()

    with pytest.raises(Unauthorized):
        await verifier.verify(sign(private_pem, "key-1"))


async def test_bypass_takes_bearer_value_as_user_id():
    verifier = InsecureLocalVerifier()

    user = await verifier.verify("local-dev-user")

    assert user.user_id == "local-dev-user"
    with pytest.raises(Unauthorized):
        await verifier.verify("  ")


def test_build_verifier_follows_auth_mode():
    assert isinstance(build_verifier(Settings(auth_mode="insecure-local")), InsecureLocalVerifier)
    jwks = build_verifier(Settings(oidc_issuer=ISSUER, oidc_audience=AUDIENCE))
    assert isinstance(jwks, JWKSVerifier)
    with pytest.raises(ValueError):
        build_verifier(Settings())
