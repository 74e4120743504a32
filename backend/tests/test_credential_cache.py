"""
Tests for the credential cache:
- MissingConfiguration names every missing source key
- TTL expiry forces re-resolution
- writes/deletes of a source key invalidate synchronously, inside the TTL
- concurrent resolutions build the credential once
"""
import asyncio

import pytest


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _counting_cache(config_store, clock, ttl=300):
    from services.credential_cache import CredentialCache, GRAPH_SOURCE_KEYS

    builds = []

    def build(values):
        builds.append(dict(values))
        return f"credential-{len(builds)}"

    cache = CredentialCache("graph", config_store, GRAPH_SOURCE_KEYS, build, ttl_seconds=ttl, clock=clock)
    return cache, builds


async def _configure_azure(config_store):
    await config_store.set("azure.tenantId", "tenant-1")
    await config_store.set("azure.clientId", "client-1")
    await config_store.set("azure.clientSecret", "secret-1")


@pytest.mark.asyncio
async def test_missing_keys_are_named(config_store):
    from services.config_store import MissingConfiguration

    await config_store.set("azure.clientId", "client-1")
    cache, builds = _counting_cache(config_store, FakeClock())

    with pytest.raises(MissingConfiguration) as exc_info:
        await cache.resolve()
    assert exc_info.value.missing_keys == ["azure.tenantId", "azure.clientSecret"]
    assert "azure.tenantId" in exc_info.value.message
    assert builds == []


@pytest.mark.asyncio
async def test_cached_until_ttl_expires(config_store):
    clock = FakeClock()
    await _configure_azure(config_store)
    cache, builds = _counting_cache(config_store, clock, ttl=300)

    assert await cache.resolve() == "credential-1"
    clock.now += 299
    assert await cache.resolve() == "credential-1"
    clock.now += 2
    assert await cache.resolve() == "credential-2"
    assert len(builds) == 2


@pytest.mark.asyncio
async def test_deleted_source_key_fails_within_ttl(config_store):
    from services.config_store import MissingConfiguration

    clock = FakeClock()
    await _configure_azure(config_store)
    cache, _ = _counting_cache(config_store, clock)
    assert await cache.resolve() == "credential-1"

    await config_store.delete("azure.tenantId")

    # Still well inside the TTL: the delete alone must force re-resolution
    clock.now += 1
    with pytest.raises(MissingConfiguration) as exc_info:
        await cache.resolve()
    assert exc_info.value.missing_keys == ["azure.tenantId"]


@pytest.mark.asyncio
async def test_rotated_secret_is_picked_up_immediately(config_store):
    clock = FakeClock()
    await _configure_azure(config_store)
    cache, builds = _counting_cache(config_store, clock)
    await cache.resolve()

    await config_store.set("azure.clientSecret", "secret-2")
    assert await cache.resolve() == "credential-2"
    assert builds[-1]["azure.clientSecret"] == "secret-2"


@pytest.mark.asyncio
async def test_unrelated_key_does_not_invalidate(config_store):
    clock = FakeClock()
    await _configure_azure(config_store)
    cache, builds = _counting_cache(config_store, clock)
    await cache.resolve()

    await config_store.set("gemini.apiKey", "key-1")
    await cache.resolve()
    assert len(builds) == 1


@pytest.mark.asyncio
async def test_concurrent_resolutions_build_once(config_store):
    await _configure_azure(config_store)
    cache, builds = _counting_cache(config_store, FakeClock())

    results = await asyncio.gather(*[cache.resolve() for _ in range(10)])
    assert set(results) == {"credential-1"}
    assert len(builds) == 1


@pytest.mark.asyncio
async def test_llm_cache_uses_env_fallback(config_store, monkeypatch):
    from services.credential_cache import create_llm_credential_cache

    monkeypatch.setenv("LLM_API_KEY", "env-key")
    cache = create_llm_credential_cache(config_store)
    assert await cache.resolve() == "env-key"


@pytest.mark.asyncio
async def test_graph_cache_builds_client_secret_credential(config_store):
    from azure.identity import ClientSecretCredential
    from services.credential_cache import create_graph_credential_cache

    await _configure_azure(config_store)
    cache = create_graph_credential_cache(config_store)
    assert isinstance(await cache.resolve(), ClientSecretCredential)
