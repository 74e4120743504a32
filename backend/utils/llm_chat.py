"""
LLM chat using Google Generative AI (Gemini).
The API key and model are resolved by the caller (config store first,
LLM_API_KEY / LLM_MODEL environment variables as fallback).
"""
import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.0-flash"
DEFAULT_TEMPERATURE = 0.4
DEFAULT_MAX_OUTPUT_TOKENS = 4096


def _sync_chat(
    system_prompt: str,
    user_text: str,
    api_key: str,
    model: str = DEFAULT_MODEL,
    json_output: bool = True,
) -> str:
    """Synchronous chat completion using Google Generative AI."""
    import google.generativeai as genai
    if not api_key:
        raise ValueError("LLM API key not provided")
    genai.configure(api_key=api_key)
    generation_config = {
        "temperature": DEFAULT_TEMPERATURE,
        "max_output_tokens": DEFAULT_MAX_OUTPUT_TOKENS,
    }
    if json_output:
        generation_config["response_mime_type"] = "application/json"
    gemini = genai.GenerativeModel(
        model or DEFAULT_MODEL,
        system_instruction=system_prompt,
        generation_config=generation_config,
    )
    response = gemini.generate_content(user_text)
    if not response or not response.text:
        raise ValueError("Empty response from LLM")
    return response.text


def _sync_get_model(api_key: str, model: str) -> str:
    """Look up a model by name; raises if the key or model is invalid."""
    import google.generativeai as genai
    genai.configure(api_key=api_key)
    name = model if model.startswith("models/") else f"models/{model}"
    info = genai.get_model(name)
    return getattr(info, "display_name", None) or name


async def chat(
    system_prompt: str,
    user_text: str,
    api_key: str,
    model: str = DEFAULT_MODEL,
    json_output: bool = True,
) -> str:
    """Async chat completion. Runs sync SDK in thread pool."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        None,
        lambda: _sync_chat(system_prompt, user_text, api_key, model, json_output),
    )


async def get_model(api_key: str, model: Optional[str] = None) -> str:
    """Async model lookup, used by the settings connection test."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        None,
        lambda: _sync_get_model(api_key, model or DEFAULT_MODEL),
    )
