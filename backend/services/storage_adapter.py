"""
Storage Adapter - blob store abstraction over SharePoint (Microsoft Graph).

Templates are fetched from, and generated SOWs uploaded to, a SharePoint
document library. A mock implementation stands in when SharePoint is not
configured (degraded mode): it synthesises the sample template and returns
a synthetic SharePoint URL without any network I/O.

Selection is per submission (select_blob_store), so configuring Azure at
runtime takes effect on the next request.
"""
import asyncio
import logging
import os
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from services.config_store import ConfigStore
from services.credential_cache import CredentialCache
from services.docx_merger import DOCX_CONTENT_TYPE, build_sample_template
from utils.errors import AppError

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
GRAPH_TIMEOUT_SECONDS = float(os.environ.get("GRAPH_TIMEOUT_SECONDS", "60"))

MOCK_WEB_URL_BASE = "https://contoso.sharepoint.com/sites/sow-factory/Shared%20Documents/SOWs"

# Max characters of a Graph error body quoted in StorageError
ERROR_BODY_EXCERPT = 200


class StorageError(AppError):
    """Blob fetch/upload failed."""
    error_code = "STORAGE_ERROR"
    status_code = 502

    def __init__(self, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.http_status = http_status


@dataclass
class UploadedFile:
    id: str
    web_url: str
    name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "web_url": self.web_url, "name": self.name}


# ============================================================================
# GRAPH CLIENT
# ============================================================================

class GraphClient:
    """Minimal Microsoft Graph client: bearer token from the graph credential cache."""

    def __init__(
        self,
        credentials: CredentialCache,
        timeout_seconds: float = GRAPH_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        base_url: str = GRAPH_BASE_URL,
    ):
        self._credentials = credentials
        self._timeout = timeout_seconds
        self._transport = transport
        self._base_url = base_url

    async def access_token(self) -> str:
        credential = await self._credentials.resolve()
        loop = asyncio.get_running_loop()
        try:
            token = await loop.run_in_executor(None, credential.get_token, GRAPH_SCOPE)
        except Exception as e:
            logger.error(f"Graph token acquisition failed: {type(e).__name__}")
            raise StorageError(f"Failed to acquire Microsoft Graph access token: {type(e).__name__}")
        return token.token

    async def request(
        self,
        method: str,
        path: str,
        content: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        token = await self.access_token()
        request_headers = {"Authorization": f"Bearer {token}"}
        request_headers.update(headers or {})

        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            follow_redirects=True,
        ) as client:
            try:
                response = await client.request(method, path, content=content, headers=request_headers)
            except httpx.TimeoutException:
                raise StorageError(f"Graph {method} {path} timed out after {self._timeout:g} seconds")
            except httpx.HTTPError as e:
                raise StorageError(f"Graph {method} {path} failed: {type(e).__name__}")

        if response.status_code >= 400:
            raise StorageError(
                f"Graph {method} {path} returned {response.status_code}: {response.text[:ERROR_BODY_EXCERPT]}",
                http_status=response.status_code,
            )
        return response


# ============================================================================
# BLOB STORES
# ============================================================================

class BlobStore(ABC):
    """get-by-id / put-into-folder document storage."""

    mock = False

    @abstractmethod
    async def download(self, site_id: str, drive_id: str, item_id: str) -> bytes:
        pass

    @abstractmethod
    async def upload(
        self,
        site_id: str,
        drive_id: str,
        folder_id: str,
        name: str,
        content: bytes,
    ) -> UploadedFile:
        pass


class SharePointBlobStore(BlobStore):
    """Document library access through Microsoft Graph."""

    def __init__(self, graph: GraphClient):
        self._graph = graph

    async def download(self, site_id: str, drive_id: str, item_id: str) -> bytes:
        path = f"/sites/{site_id}/drives/{drive_id}/items/{item_id}/content"
        response = await self._graph.request("GET", path)
        logger.info(f"Template downloaded from SharePoint: item={item_id} bytes={len(response.content)}")
        return response.content

    async def upload(
        self,
        site_id: str,
        drive_id: str,
        folder_id: str,
        name: str,
        content: bytes,
    ) -> UploadedFile:
        path = f"/sites/{site_id}/drives/{drive_id}/items/{folder_id}:/{quote(name)}:/content"
        response = await self._graph.request(
            "PUT", path, content=content, headers={"Content-Type": DOCX_CONTENT_TYPE}
        )
        try:
            item = response.json()
            uploaded = UploadedFile(id=item["id"], web_url=item["webUrl"], name=item.get("name", name))
        except (ValueError, KeyError) as e:
            raise StorageError(f"Unexpected Graph upload response: missing {e}")
        logger.info(f"SOW uploaded to SharePoint: {uploaded.name} ({uploaded.id})")
        return uploaded


class MockBlobStore(BlobStore):
    """Degraded mode: in-process template, synthetic locator, no network."""

    mock = True

    async def download(self, site_id: str, drive_id: str, item_id: str) -> bytes:
        logger.warning(f"[MOCK] SharePoint not configured - using sample template for item {item_id}")
        return build_sample_template()

    async def upload(
        self,
        site_id: str,
        drive_id: str,
        folder_id: str,
        name: str,
        content: bytes,
    ) -> UploadedFile:
        logger.warning(f"[MOCK] SharePoint not configured - skipping upload of {name} ({len(content)} bytes)")
        return UploadedFile(
            id=f"mock-file-{secrets.token_hex(8)}",
            web_url=f"{MOCK_WEB_URL_BASE}/{quote(name)}",
            name=name,
        )


async def select_blob_store(config_store: ConfigStore, graph: GraphClient) -> BlobStore:
    """Mock store in degraded mode, SharePoint otherwise."""
    summary = await config_store.status_summary()
    if summary["degraded_mode"]:
        return MockBlobStore()
    return SharePointBlobStore(graph)
