from taskgate.logging import _redact_secrets
from taskgate.storage.redis_cache import RedisCache, SyncRedisCache


class FakeRedis:
    def __init__(self):
        self.values = {}

    def set(self, key, value, ex=None):
        self.values[key] = (value, ex)

    def exists(self, key):
        return 1 if key in self.values else 0


def _sync_cache(client) -> SyncRedisCache:
    cache: SyncRedisCache = SyncRedisCache.__new__(SyncRedisCache)
    cache._sync_client = client
    cache.redis_url = "redis://unit-test"
    return cache


def test_rate_key_is_hashed():
    key = RedisCache._normalize_rate_key("auth:login:10.0.0.1")
    assert key.startswith("rate:")
    assert "10.0.0.1" not in key
    assert key == RedisCache._normalize_rate_key("auth:login:10.0.0.1")


def test_unpack_bucket():
    assert RedisCache._unpack_bucket([1, "4.5", 0], False) is True
    assert RedisCache._unpack_bucket([0, "0.2", 450], True) == (False, 0, 450)


async def test_revocation_keys_expire_with_ttl():
    client = FakeRedis()
    cache = _sync_cache(client)
    await cache.revoke_access_token("abc", 900)
    assert client.values == {"auth:access:revoked:abc": ("1", 900)}
    assert await cache.is_access_token_revoked("abc")
    assert not await cache.is_access_token_revoked("def")


async def test_zero_ttl_is_not_stored():
    client = FakeRedis()
    await _sync_cache(client).revoke_access_token("abc", 0)
    assert client.values == {}


def test_log_redaction_masks_credentials():
    event = _redact_secrets(
        None,
        "info",
        {"event": "login", "password": "correct-horse", "refresh_token": "abcdefgh", "account_id": "a1"},
    )
    assert event["password"] == "co***se"
    assert event["refresh_token"] == "ab***gh"
    assert event["account_id"] == "a1"
