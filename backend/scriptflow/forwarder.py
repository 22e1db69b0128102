"""Repassa o corpo JSON para o webhook da automação externa e devolve a resposta.

Não grava nada no banco: a automação escreve o resultado direto em
project_steps, fora desta requisição.
"""

import asyncio
import json
import logging
from typing import Any

import httpx

from scriptflow.settings import Settings
from scriptflow.workflow.steps import StepDefinition

logger = logging.getLogger(__name__)

COST_FIELDS = ("cost", "processing_cost", "price")


class WebhookError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class WebhookNotConfigured(WebhookError):
    pass


class WebhookUpstreamError(WebhookError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class WebhookForwarder:
    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self.transport = transport

    @property
    def timeout(self) -> float:
        return self.settings.webhook_timeout_seconds

    async def forward(self, step: StepDefinition, payload: Any) -> Any:
        url = step.webhook_url(self.settings)
        if not url:
            logger.error("%s webhook URL missing (%s)", step.name, step.url_setting.upper())
            raise WebhookNotConfigured("Webhook URL not configured")

        logger.info("POST %s webhook -> %s", step.name, url)
        logger.debug("request body: %s", json.dumps(payload, ensure_ascii=False))

        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=None) as client:
                response = await asyncio.wait_for(
                    client.post(url, json=payload, headers={"Content-Type": "application/json"}),
                    timeout=self.timeout,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.error("%s webhook timed out after %.0f seconds", step.name, self.timeout)
            raise WebhookUpstreamError(f"{step.name} webhook request timed out") from exc
        except httpx.HTTPError as exc:
            logger.error("%s webhook request error: %s", step.name, exc)
            raise WebhookUpstreamError(str(exc) or f"{step.name} webhook request failed") from exc

        logger.info("%s webhook responded %s", step.name, response.status_code)

        if not response.is_success:
            logger.error(
                "%s webhook failed: status=%s headers=%s body=%s",
                step.name,
                response.status_code,
                dict(response.headers),
                response.text,
            )
            raise WebhookUpstreamError(
                f"{step.name} webhook request failed: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            result = response.json()
        except ValueError as exc:
            logger.error("%s webhook returned invalid JSON: %s", step.name, response.text[:500])
            raise WebhookUpstreamError(f"Invalid JSON from {step.name} webhook: {exc}") from exc

        if isinstance(result, dict):
            logger.info(
                "%s cost data - %s",
                step.name,
                ", ".join(f"{field}={result.get(field)!r}" for field in COST_FIELDS),
            )
        return result
