"""
Credential Cache - short-lived in-memory cache of credentials built from secrets.

Each cache is keyed by a credential type ("graph", "llm") and remembers which
config keys it was built from. The ConfigStore invalidates it synchronously
whenever one of those keys is written or deleted, so a rotated secret is never
served from cache, even inside the TTL.

Concurrency: many readers, one refresher. Refresh runs under an asyncio.Lock;
readers outside the lock only ever see a fully built entry (the entry is
replaced as a whole, never mutated).
"""
import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from azure.identity import ClientSecretCredential

from services.config_store import ConfigStore, MissingConfiguration

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = int(os.environ.get("CREDENTIAL_CACHE_TTL_SECONDS", "300"))

GRAPH_SOURCE_KEYS = ("azure.tenantId", "azure.clientId", "azure.clientSecret")
LLM_SOURCE_KEYS = ("gemini.apiKey",)


@dataclass(frozen=True)
class CacheEntry:
    credential: Any
    source_keys: Tuple[str, ...]
    expires_at: float


class CredentialCache:
    """Resolve-and-cache a credential from a fixed set of config keys."""

    def __init__(
        self,
        credential_type: str,
        config_store: ConfigStore,
        source_keys: Tuple[str, ...],
        build: Callable[[Dict[str, str]], Any],
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.credential_type = credential_type
        self.source_keys = tuple(source_keys)
        self._config_store = config_store
        self._build = build
        self._ttl = ttl_seconds
        self._clock = clock
        self._entry: Optional[CacheEntry] = None
        self._generation = 0
        self._lock = asyncio.Lock()
        config_store.register_invalidation_hook(self.source_keys, self.invalidate)

    def invalidate(self) -> None:
        self._entry = None
        # A refresh that started before this call must not store its result
        self._generation += 1
        logger.info(f"Credential cache invalidated: {self.credential_type}")

    def _fresh_entry(self) -> Optional[CacheEntry]:
        entry = self._entry
        if entry is not None and self._clock() < entry.expires_at:
            return entry
        return None

    async def resolve(self) -> Any:
        entry = self._fresh_entry()
        if entry is not None:
            return entry.credential

        async with self._lock:
            entry = self._fresh_entry()
            if entry is not None:
                return entry.credential

            generation = self._generation
            values = {}
            for key in self.source_keys:
                values[key] = await self._config_store.get_with_fallback(key)

            missing = [k for k in self.source_keys if not values[k]]
            if missing:
                raise MissingConfiguration(
                    f"{self.credential_type} credentials are not configured. "
                    f"Go to Settings to add: {', '.join(missing)}",
                    missing_keys=missing,
                )

            credential = self._build(values)
            if generation == self._generation:
                self._entry = CacheEntry(
                    credential=credential,
                    source_keys=self.source_keys,
                    expires_at=self._clock() + self._ttl,
                )
            return credential


def build_graph_credential(values: Dict[str, str]) -> ClientSecretCredential:
    return ClientSecretCredential(
        tenant_id=values["azure.tenantId"],
        client_id=values["azure.clientId"],
        client_secret=values["azure.clientSecret"],
    )


def create_graph_credential_cache(config_store: ConfigStore, **kwargs) -> CredentialCache:
    return CredentialCache("graph", config_store, GRAPH_SOURCE_KEYS, build_graph_credential, **kwargs)


def create_llm_credential_cache(config_store: ConfigStore, **kwargs) -> CredentialCache:
    return CredentialCache("llm", config_store, LLM_SOURCE_KEYS, lambda values: values["gemini.apiKey"], **kwargs)
