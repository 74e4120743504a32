"""
Settings Service - admin view and update of runtime integration settings.

The read view exposes configured/not-configured flags only. Connection
tests report {ok, detail} and never raise.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from services.config_store import ConfigStore
from services.credential_cache import CredentialCache
from services.storage_adapter import GraphClient
from utils import llm_chat
from utils.errors import AppError

logger = logging.getLogger(__name__)

SUPPORTED_SERVICES = ("sharepoint", "llm")


class UnknownService(AppError):
    error_code = "VALIDATION_FAILED"
    status_code = 400


class SettingsService:

    def __init__(
        self,
        config_store: ConfigStore,
        graph: GraphClient,
        llm_credentials: CredentialCache,
        model_lookup: Callable[..., Awaitable[str]] = llm_chat.get_model,
    ):
        self._config_store = config_store
        self._graph = graph
        self._llm_credentials = llm_credentials
        self._model_lookup = model_lookup

    async def get_settings(self) -> Dict[str, Any]:
        return {
            "configured": await self._config_store.configured_keys(),
            "status": await self._config_store.status_summary(),
        }

    async def update_settings(self, actor_id: str, updates: Dict[str, Optional[str]]) -> Dict[str, Any]:
        touched = await self._config_store.apply_updates(updates, actor_id)
        settings = await self.get_settings()
        settings["updated"] = touched
        return settings

    async def test_connection(self, service: str) -> Dict[str, Any]:
        if service not in SUPPORTED_SERVICES:
            raise UnknownService(f"Unknown service. Use one of: {', '.join(SUPPORTED_SERVICES)}")
        if service == "sharepoint":
            return await self._test_sharepoint()
        return await self._test_llm()

    async def _test_sharepoint(self) -> Dict[str, Any]:
        try:
            response = await self._graph.request("GET", "/organization?$select=displayName,id")
            orgs = response.json().get("value") or []
            name = orgs[0].get("displayName") if orgs else None
            return {"ok": True, "detail": f"Connected to tenant: {name or 'unknown'}"}
        except AppError as e:
            return {"ok": False, "detail": e.message}
        except Exception as e:
            logger.error(f"SharePoint connection test failed: {type(e).__name__}")
            return {"ok": False, "detail": f"{type(e).__name__}: {e}"}

    async def _test_llm(self) -> Dict[str, Any]:
        try:
            api_key = await self._llm_credentials.resolve()
            model = await self._config_store.get_with_fallback("gemini.model") or llm_chat.DEFAULT_MODEL
            display_name = await self._model_lookup(api_key, model)
            return {"ok": True, "detail": f"Connected - model {display_name} is available"}
        except AppError as e:
            return {"ok": False, "detail": e.message}
        except Exception as e:
            logger.error(f"LLM connection test failed: {type(e).__name__}")
            return {"ok": False, "detail": f"{type(e).__name__}: {e}"}
