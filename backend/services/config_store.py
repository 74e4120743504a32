"""
Config Store - Encrypted runtime configuration (secret store).

Runtime credentials (Azure app registration, SharePoint ids, LLM key) are
managed by admins at runtime rather than baked into the deployment. Values
are stored in the app_config collection encrypted with AES-256-GCM.

Blob layout (base64 encoded in the `encrypted` field):
    12 bytes nonce | 16 bytes auth tag | ciphertext

Key material:
- ENCRYPTION_KEY (64-char hex = 32 bytes) when set
- otherwise SHA-256(APP_SECRET), with a warning, so local dev works
  without extra setup

RULES:
- Values are never returned by the status views, only present/absent
- A value that fails to decrypt is treated as absent (logged, never raised)
- Writes and deletes invalidate any credential cache built from that key
  before the call returns
"""
import base64
import binascii
import hashlib
import logging
import os
import secrets
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from database import database
from models import AuditAction
from utils.audit import create_audit_log
from utils.errors import AppError

logger = logging.getLogger(__name__)

NONCE_BYTES = 12
TAG_BYTES = 16
KEY_BYTES = 32

# Keys admins may manage through the settings API
MANAGED_KEYS: Tuple[str, ...] = (
    "azure.tenantId",
    "azure.clientId",
    "azure.clientSecret",
    "sharepoint.siteId",
    "sharepoint.driveId",
    "gemini.apiKey",
    "gemini.model",
)

# Deploy-time fallbacks, consulted only when the key is absent from the store
ENV_FALLBACKS: Dict[str, str] = {
    "azure.tenantId": "AZURE_TENANT_ID",
    "azure.clientId": "AZURE_CLIENT_ID",
    "azure.clientSecret": "AZURE_CLIENT_SECRET",
    "gemini.apiKey": "LLM_API_KEY",
    "gemini.model": "LLM_MODEL",
}

# Without a tenant id the pipeline runs against the mock blob store
PRIMARY_INTEGRATION_KEY = "azure.tenantId"


class MissingConfiguration(AppError):
    """A required secret is absent. Admin-actionable."""
    error_code = "MISSING_CONFIGURATION"
    status_code = 503

    def __init__(self, message: str, missing_keys: Optional[List[str]] = None):
        super().__init__(message)
        self.missing_keys = list(missing_keys or [])


class UnknownConfigKey(AppError):
    error_code = "VALIDATION_FAILED"
    status_code = 400


# ============================================================================
# ENCRYPTION
# ============================================================================

def resolve_encryption_key(environ: Optional[Dict[str, str]] = None) -> bytes:
    """Return the 256-bit store key from ENCRYPTION_KEY, or derive it from APP_SECRET."""
    env = os.environ if environ is None else environ

    hex_key = (env.get("ENCRYPTION_KEY") or "").strip()
    if hex_key:
        try:
            key = bytes.fromhex(hex_key)
        except ValueError:
            key = b""
        if len(key) == KEY_BYTES:
            return key
        logger.warning("ENCRYPTION_KEY is set but is not 64 hex characters; ignoring it")

    app_secret = env.get("APP_SECRET")
    if app_secret:
        logger.warning(
            "ENCRYPTION_KEY not set - deriving the config store key from APP_SECRET. "
            "Set ENCRYPTION_KEY in production."
        )
        return hashlib.sha256(app_secret.encode("utf-8")).digest()

    raise MissingConfiguration(
        "Set ENCRYPTION_KEY (64-char hex) or APP_SECRET in environment variables.",
        missing_keys=["ENCRYPTION_KEY"],
    )


def encrypt_value(plaintext: str, key: bytes) -> str:
    """Encrypt with a fresh random nonce. Returns base64(nonce | tag | ciphertext)."""
    nonce = secrets.token_bytes(NONCE_BYTES)
    # AESGCM appends the tag to the ciphertext
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return base64.b64encode(nonce + tag + ciphertext).decode("ascii")


def decrypt_value(blob: str, key: bytes) -> str:
    """Inverse of encrypt_value. Raises InvalidTag or ValueError on bad input."""
    raw = base64.b64decode(blob, validate=True)
    if len(raw) < NONCE_BYTES + TAG_BYTES:
        raise ValueError("Encrypted value too short")
    nonce = raw[:NONCE_BYTES]
    tag = raw[NONCE_BYTES:NONCE_BYTES + TAG_BYTES]
    ciphertext = raw[NONCE_BYTES + TAG_BYTES:]
    plaintext = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
    return plaintext.decode("utf-8")


# ============================================================================
# STORE
# ============================================================================

class ConfigStore:
    """Encrypted key/value store over the app_config collection."""

    COLLECTION = "app_config"

    def __init__(self, encryption_key: Optional[bytes] = None):
        self._key = encryption_key if encryption_key is not None else resolve_encryption_key()
        if len(self._key) != KEY_BYTES:
            raise ValueError(f"Config store key must be {KEY_BYTES} bytes, got {len(self._key)}")
        self._invalidation_hooks: List[Tuple[frozenset, Callable[[], None]]] = []

    def register_invalidation_hook(self, source_keys: Iterable[str], callback: Callable[[], None]) -> None:
        """Call `callback` whenever any of `source_keys` is written or deleted."""
        self._invalidation_hooks.append((frozenset(source_keys), callback))

    def _notify_changed(self, key: str) -> None:
        for source_keys, callback in self._invalidation_hooks:
            if key in source_keys:
                callback()

    async def get(self, key: str) -> Optional[str]:
        """Decrypted value, or None when absent or undecryptable."""
        db = database.get_db()
        record = await db[self.COLLECTION].find_one({"key": key}, {"_id": 0})
        if not record:
            return None
        try:
            return decrypt_value(record["encrypted"], self._key)
        except (InvalidTag, ValueError, binascii.Error, KeyError):
            logger.error(f"Failed to decrypt config value: {key}")
            return None

    async def get_with_fallback(self, key: str) -> Optional[str]:
        """Store value first, then the deploy-time environment variable."""
        value = await self.get(key)
        if value:
            return value
        env_name = ENV_FALLBACKS.get(key)
        if not env_name:
            return None
        return os.environ.get(env_name) or None

    async def set(self, key: str, value: str, actor_id: Optional[str] = None) -> None:
        db = database.get_db()
        encrypted = encrypt_value(value, self._key)
        now = datetime.now(timezone.utc)
        await db[self.COLLECTION].update_one(
            {"key": key},
            {
                "$set": {"encrypted": encrypted, "updated_by": actor_id, "updated_at": now},
                "$setOnInsert": {"key": key, "created_at": now},
            },
            upsert=True,
        )
        self._notify_changed(key)
        logger.info(f"Config value saved: {key}")

    async def delete(self, key: str) -> None:
        db = database.get_db()
        await db[self.COLLECTION].delete_many({"key": key})
        self._notify_changed(key)
        logger.info(f"Config value deleted: {key}")

    async def configured_keys(self) -> Dict[str, bool]:
        """present/absent for every managed key. Never values."""
        configured = {}
        for key in MANAGED_KEYS:
            configured[key] = bool(await self.get(key))
        return configured

    async def status_summary(self) -> Dict[str, bool]:
        """Per-integration configured flags plus the degraded-mode flag."""
        tenant_id = await self.get(PRIMARY_INTEGRATION_KEY)
        llm_key = await self.get_with_fallback("gemini.apiKey")

        env_mock = os.environ.get("MOCK_SHAREPOINT", "").lower() == "true"
        sharepoint = bool(tenant_id)
        return {
            "sharepoint": sharepoint,
            "llm": bool(llm_key),
            "degraded_mode": env_mock or not sharepoint,
        }

    async def apply_updates(self, updates: Dict[str, Optional[str]], actor_id: Optional[str] = None) -> List[str]:
        """
        Apply a partial settings map.

        Keys mapped to None are skipped, "" deletes, anything else upserts.
        Unknown keys reject the whole map before anything is written.
        """
        unknown = sorted(k for k in updates if k not in MANAGED_KEYS)
        if unknown:
            raise UnknownConfigKey(f"Unknown settings keys: {', '.join(unknown)}")

        touched = []
        for key in MANAGED_KEYS:
            value = updates.get(key)
            if value is None:
                continue
            if value == "":
                await self.delete(key)
            else:
                await self.set(key, value, actor_id)
            touched.append(key)

        await create_audit_log(
            action=AuditAction.SETTINGS_UPDATED,
            actor_id=actor_id,
            resource_type="settings",
            metadata={"keys": touched},
        )
        return touched
