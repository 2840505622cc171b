"""Decision model client (Ollama chat API)."""

import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import config

logger = logging.getLogger(__name__)


class ModelClient:
    """
    Async client for the manager's chat model.

    Handles:
    - Non-streaming chat completions for manager decisions
    - Model listing for the health endpoint
    """

    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(300.0, connect=10.0))
        self.base_url = (base_url or config.model_url).rstrip("/")

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()

    async def list_models(self) -> List[Dict[str, Any]]:
        """List available models; empty on failure."""
        try:
            resp = await self.client.get(f"{self.base_url}/api/tags")
            resp.raise_for_status()
            return resp.json().get("models", [])
        except Exception as e:
            logger.error(f"Failed to list models: {e}")
            return []

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """
        Run one non-streaming completion and return the reply text.

        Raises httpx errors to the caller; the controller turns them into a
        terminal manager error.
        """
        model = model or config.manager_model
        payload = {
            "model": model,
            "messages": messages,
            "stream": False,
            "options": {
                "temperature": config.manager_temperature if temperature is None else temperature,
            },
        }

        logger.info(f"Manager chat: model={model}, messages={len(messages)}")
        resp = await self.client.post(f"{self.base_url}/api/chat", json=payload)
        resp.raise_for_status()
        content = resp.json().get("message", {}).get("content", "")
        return content if isinstance(content, str) else str(content)


# Global instance
model_client = ModelClient()
