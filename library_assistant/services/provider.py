"""
Library Assistant — Conversation Provider (Tavus REST)

Creates, inspects, ends and deletes hosted agent conversations.
Every non-2xx response or network failure surfaces as ProviderError
with the API's own `message` when it sends one.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..core.config import AssistantConfig, assistant_cfg
from ..core.errors import ConfigurationError, ProviderError
from ..core.models import CatalogSummary, ConversationHandle
from ..processing.context import build_custom_greeting

logger = logging.getLogger("library_assistant.provider")


class TavusConversationProvider:
    """
    Usage:
        provider = TavusConversationProvider()
        handle = await provider.create(context, summary)
        await provider.end(handle.id)
        await provider.aclose()
    """

    def __init__(
        self,
        config: AssistantConfig = assistant_cfg,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config
        self._client = client
        self._owns_client = client is None

    @property
    def config(self) -> AssistantConfig:
        return self._config

    # ── Public API ──────────────────────────────────────────────────────

    async def create(self, context: str, catalog_summary: CatalogSummary) -> ConversationHandle:
        request = self.build_create_request(context, catalog_summary)
        logger.info(
            f"Creating conversation for replica {self._config.replica_id} "
            f"with {catalog_summary.total} books"
        )
        data = await self._request("POST", "/conversations", json=request)
        try:
            handle = ConversationHandle.from_api(data)
        except (KeyError, TypeError) as e:
            raise ProviderError(f"Malformed conversation response: missing {e}") from e
        logger.info(f"Conversation created: {handle.id}")
        return handle

    async def get(self, conversation_id: str) -> ConversationHandle:
        data = await self._request("GET", f"/conversations/{conversation_id}")
        try:
            return ConversationHandle.from_api(data)
        except (KeyError, TypeError) as e:
            raise ProviderError(f"Malformed conversation response: missing {e}") from e

    async def end(self, conversation_id: str) -> None:
        await self._request("POST", f"/conversations/{conversation_id}/end")
        logger.info(f"Conversation ended: {conversation_id}")

    async def delete(self, conversation_id: str) -> None:
        await self._request("DELETE", f"/conversations/{conversation_id}")
        logger.info(f"Conversation deleted: {conversation_id}")

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ── Request building ────────────────────────────────────────────────

    def build_create_request(self, context: str, catalog_summary: CatalogSummary) -> Dict[str, Any]:
        cfg = self._config
        request: Dict[str, Any] = {
            "replica_id": cfg.replica_id,
            "conversation_name": cfg.conversation_name,
            "conversational_context": context,
            "custom_greeting": build_custom_greeting(catalog_summary),
            "properties": {
                "max_call_duration": cfg.max_call_duration,
                "participant_left_timeout": cfg.participant_left_timeout,
                "participant_absent_timeout": cfg.participant_absent_timeout,
                "enable_recording": cfg.enable_recording,
                "enable_closed_captions": cfg.enable_closed_captions,
                "apply_greenscreen": cfg.apply_greenscreen,
                "language": cfg.language,
            },
        }
        if cfg.persona_id:
            request["persona_id"] = cfg.persona_id
        return request

    # ── HTTP plumbing ───────────────────────────────────────────────────

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._config.base_url,
                timeout=self._config.request_timeout,
            )
        return self._client

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self._config.api_key:
            raise ConfigurationError("Tavus API key not configured")

        headers = {"x-api-key": self._config.api_key}
        try:
            response = await self._get_client().request(method, path, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Provider request {method} {path} failed: {e}")
            raise ProviderError(f"Provider request failed: {e}") from e

        if response.is_error:
            message = response.reason_phrase
            try:
                body = response.json()
                if isinstance(body, dict) and body.get("message"):
                    message = str(body["message"])
            except ValueError:
                pass
            logger.error(f"Provider {method} {path} → {response.status_code}: {message}")
            raise ProviderError(f"Tavus API error: {message}", status_code=response.status_code)

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
