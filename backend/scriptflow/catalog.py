import logging

import httpx

from scriptflow.settings import settings

logger = logging.getLogger(__name__)

ALLOWED_PROVIDERS = ("openai", "google", "anthropic", "perplexity")


def provider_from_model_id(model_id: str) -> str:
    return model_id.split("/")[0]


def format_model(raw: dict) -> dict:
    return {
        "id": raw["id"],
        "name": raw.get("name") or raw["id"],
        "description": raw.get("description") or "",
        "context_length": raw.get("context_length"),
        "pricing": raw.get("pricing") or {},
        "provider": provider_from_model_id(raw["id"]),
    }


async def fetch_models(transport: httpx.AsyncBaseTransport | None = None) -> list[dict]:
    """Modelos do OpenRouter, só dos provedores permitidos."""
    async with httpx.AsyncClient(transport=transport, timeout=30.0) as client:
        response = await client.get(
            settings.openrouter_models_url,
            headers={"X-Title": "scriptflow"},
        )
    response.raise_for_status()

    models = [format_model(m) for m in response.json().get("data", []) if m.get("id")]
    allowed = [m for m in models if m["provider"] in ALLOWED_PROVIDERS]
    logger.info("fetched %d models (%d allowed)", len(models), len(allowed))
    return allowed
