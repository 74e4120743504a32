"""
SOW Generator - calls the LLM and enforces the SOW output contract.

FLOW:
Credential resolve (llm cache) -> Prompt build (deterministic) ->
LLM call (bounded by LLM_TIMEOUT_SECONDS) -> Fence strip -> JSON parse ->
Contract validation (models.GeneratedContent)

FAILURES (no internal retry, the orchestrator treats all as permanent):
- ProviderUnavailable: no API key configured
- ProviderTimeout:     the call did not finish in time
- ProviderError:       transport / SDK / non-2xx failure
- SchemaMismatch:      not JSON, or JSON that breaks the contract
"""
import asyncio
import json
import logging
import os
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from models import GeneratedContent
from services.config_store import ConfigStore, MissingConfiguration
from services.credential_cache import CredentialCache
from services.sow_prompts import SOW_SYSTEM_PROMPT, build_user_prompt
from utils import llm_chat
from utils.errors import AppError

logger = logging.getLogger(__name__)

LLM_TIMEOUT_SECONDS = float(os.environ.get("LLM_TIMEOUT_SECONDS", "120"))

# Max characters of a raw response quoted in an error message
RAW_EXCERPT_LENGTH = 200


class ProviderUnavailable(AppError):
    error_code = "PROVIDER_UNAVAILABLE"
    status_code = 503


class ProviderError(AppError):
    error_code = "PROVIDER_ERROR"
    status_code = 502


class ProviderTimeout(ProviderError):
    error_code = "PROVIDER_TIMEOUT"
    status_code = 504


class SchemaMismatch(AppError):
    error_code = "SCHEMA_MISMATCH"
    status_code = 502


def strip_code_fences(text: str) -> str:
    """Remove a ```json ... ``` wrapper if the model added one."""
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def _describe_validation_error(exc: ValidationError) -> str:
    issues = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ())) or "response"
        issues.append(f"{location}: {err.get('msg')}")
    return "; ".join(issues)


def parse_generated_content(raw: str) -> GeneratedContent:
    """Parse and validate an LLM response. Raises SchemaMismatch."""
    text = strip_code_fences(raw or "")
    if not text:
        raise SchemaMismatch("LLM returned empty response")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        raise SchemaMismatch(f"LLM response was not valid JSON: {text[:RAW_EXCERPT_LENGTH]}")

    try:
        return GeneratedContent.model_validate(parsed)
    except ValidationError as e:
        detail = _describe_validation_error(e)
        logger.error(f"LLM response failed schema validation: {detail}")
        raise SchemaMismatch(f"LLM response did not match expected schema: {detail}")


class SOWGenerator:
    """Content generator client for SOW drafts."""

    def __init__(
        self,
        config_store: ConfigStore,
        credentials: CredentialCache,
        chat: Callable[..., Awaitable[str]] = llm_chat.chat,
        timeout_seconds: float = LLM_TIMEOUT_SECONDS,
    ):
        self._config_store = config_store
        self._credentials = credentials
        self._chat = chat
        self._timeout = timeout_seconds

    async def resolve_model(self) -> str:
        return await self._config_store.get_with_fallback("gemini.model") or llm_chat.DEFAULT_MODEL

    async def generate(
        self,
        intake_data: Dict[str, Any],
        template_context: Dict[str, Optional[str]],
    ) -> GeneratedContent:
        try:
            api_key = await self._credentials.resolve()
        except MissingConfiguration:
            raise ProviderUnavailable(
                "LLM API key is not configured. Go to Settings to add your Gemini API key."
            )

        model = await self.resolve_model()
        user_prompt = build_user_prompt(intake_data, template_context)

        logger.info(f"Calling LLM for SOW generation: model={model} template={template_context.get('name')}")

        try:
            raw = await asyncio.wait_for(
                self._chat(SOW_SYSTEM_PROMPT, user_prompt, api_key=api_key, model=model),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            raise ProviderTimeout(f"LLM call did not complete within {self._timeout:g} seconds")
        except Exception as e:
            logger.error(f"LLM request failed: {type(e).__name__}")
            raise ProviderError(f"LLM request failed: {e}")

        content = parse_generated_content(raw)
        logger.info(f"LLM generation complete: model={model}")
        return content
