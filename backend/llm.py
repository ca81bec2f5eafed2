# llm.py - Text generation against a configured LLM provider
#
# Providers are OpenAI-compatible chat endpoints or Anthropic messages.
# With no API key configured the service answers with a stub; when a call
# fails the caller's fallback text is returned, or InternalError is raised
# if the caller has none.
import os
import logging
from typing import Dict, Optional

import httpx

from errors import InternalError
from telemetry import span

logger = logging.getLogger("grc.llm")

LLM_PROVIDERS = {
    "openai": {"base_url": "https://api.openai.com/v1", "env_key": "OPENAI_API_KEY", "default_model": "gpt-4o-mini"},
    "groq": {"base_url": "https://api.groq.com/openai/v1", "env_key": "GROQ_API_KEY", "default_model": "llama-3.3-70b-versatile"},
    "anthropic": {"base_url": "https://api.anthropic.com/v1", "env_key": "ANTHROPIC_API_KEY", "default_model": "claude-3-5-sonnet-20241022"},
    "local": {"base_url": os.getenv("LOCAL_LLM_URL", "http://localhost:11434/v1"), "env_key": None, "default_model": "llama3.1:8b"},
}
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))


def resolve_provider():
    """Pick (provider key, config, model, api key); ("stub", ...) when none is usable."""
    preferred = os.getenv("LLM_PROVIDER", "").lower()
    order = ([preferred] if preferred in LLM_PROVIDERS else []) + ["groq", "openai", "anthropic"]
    for key in order:
        cfg = LLM_PROVIDERS[key]
        api_key = os.getenv(cfg["env_key"]) if cfg["env_key"] else "local"
        if api_key:
            return key, cfg, cfg["default_model"], api_key
    return "stub", {}, "stub-model", None


async def _call_provider(key: str, cfg: dict, model: str, api_key: str, prompt: str, max_tokens: int) -> str:
    async with httpx.AsyncClient(timeout=LLM_TIMEOUT_SECONDS) as client:
        if key == "anthropic":
            resp = await client.post(
                f"{cfg['base_url']}/messages",
                headers={"x-api-key": api_key, "anthropic-version": "2023-06-01", "content-type": "application/json"},
                json={"model": model, "max_tokens": max_tokens, "messages": [{"role": "user", "content": prompt}]},
            )
            resp.raise_for_status()
            return resp.json()["content"][0]["text"]

        resp = await client.post(
            f"{cfg['base_url']}/chat/completions",
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            json={"model": model, "messages": [{"role": "user", "content": prompt}], "max_tokens": max_tokens},
        )
        resp.raise_for_status()
        return resp.json()["choices"][0]["message"]["content"]


async def generate_text(prompt: str, fallback: Optional[str] = None, max_tokens: int = 2048) -> Dict[str, str]:
    """Return {"content", "model_used", "source"} where source is llm, stub or fallback."""
    key, cfg, model, api_key = resolve_provider()
    if key == "stub":
        return {"content": fallback or f"[Stub] {prompt[:200]}", "model_used": model, "source": "stub"}

    try:
        with span("llm.generate", **{"llm.provider": key, "llm.model": model}):
            content = await _call_provider(key, cfg, model, api_key, prompt, max_tokens)
    except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
        logger.warning(f"LLM call failed ({key}/{model}): {e}")
        if fallback is None:
            raise InternalError(f"Text generation failed: {e}")
        return {"content": fallback, "model_used": f"{model} (fallback)", "source": "fallback"}

    return {"content": content, "model_used": model, "source": "llm"}
