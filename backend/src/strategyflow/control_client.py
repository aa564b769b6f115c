"""
REST control plane for the strategy engine.

Starting a session is two calls: ``create_session_id`` reserves an id for the
run configuration (the client subscribes its channel to that id), then
``start_session`` launches the run.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Protocol

import aiohttp

from .config import SessionConfig

logger = logging.getLogger(__name__)


class ControlPlaneError(Exception):
    """Raised when a control plane request fails or returns an error status."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ControlPlane(Protocol):
    async def create_session_id(self, config: SessionConfig) -> str:
        ...

    async def start_session(self, config: SessionConfig, session_id: str) -> Any:
        ...

    async def stop_session(self, session_id: str) -> Any:
        ...


class StrategyControlClient:
    """aiohttp client for the engine's ``/strategies`` endpoints."""

    def __init__(self, base_url: str, api_token: Optional[str] = None, timeout: int = 30):
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session."""
        if self._session is None or self._session.closed:
            headers = {"Accept": "application/json"}
            if self.api_token:
                headers["Authorization"] = f"Bearer {self.api_token}"
            self._session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _make_request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        """
        Send a request and decode the response.

        JSON responses are decoded; anything else comes back as text.

        Raises:
            ControlPlaneError: transport failure or a non-2xx status
        """
        session = await self._get_session()
        url = f"{self.base_url}{path}"

        try:
            async with session.request(method, url, json=data, params=params) as response:
                response_text = await response.text()

                if response.status >= 300:
                    error_msg = f"Control plane error {response.status} on {method} {path}: {response_text}"
                    logger.error(error_msg)
                    raise ControlPlaneError(error_msg, status=response.status)

                if not response_text:
                    return None
                if "json" in (response.content_type or ""):
                    try:
                        return json.loads(response_text)
                    except json.JSONDecodeError as e:
                        raise ControlPlaneError(f"Invalid JSON response from {path}: {e}") from e
                return response_text

        except aiohttp.ClientError as e:
            logger.error(f"Control plane request {method} {path} failed: {e}")
            raise ControlPlaneError(f"HTTP request failed: {e}") from e

    async def create_session_id(self, config: SessionConfig) -> str:
        """Reserve a session id for ``config``."""
        result = await self._make_request("POST", "/strategies/generate-id", data=config.to_wire())
        if isinstance(result, dict):
            result = result.get("id") or result.get("strategyId")
        if not isinstance(result, str) or not result.strip():
            raise ControlPlaneError(f"Control plane returned no session id: {result!r}")
        session_id = result.strip().strip('"')
        logger.info(f"Generated session id {session_id} for {config.strategy_class}")
        return session_id

    async def start_session(self, config: SessionConfig, session_id: str) -> Any:
        """Launch the run. Async runs stream no bars and report progress instead."""
        params = {
            "strategyId": session_id,
            "async": str(config.is_async).lower(),
            "showChart": str(config.show_chart).lower(),
        }
        result = await self._make_request("POST", "/strategies/start", data=config.to_wire(), params=params)
        logger.info(f"Started session {session_id} ({config.strategy_class}, speed={config.speed.value})")
        return result

    async def stop_session(self, session_id: str) -> Any:
        result = await self._make_request("POST", f"/strategies/{session_id}/stop")
        logger.info(f"Stopped session {session_id}")
        return result

    async def get_strategies(self) -> List[str]:
        """Strategy classes the engine can run."""
        result = await self._make_request("GET", "/strategies")
        if not isinstance(result, list):
            raise ControlPlaneError(f"Unexpected strategies response: {result!r}")
        return [str(s) for s in result]

    async def get_strategy_params(self, strategy_class: str) -> List[Dict[str, Any]]:
        """Declared parameters for ``strategy_class``."""
        result = await self._make_request("GET", f"/strategies/{strategy_class}/params")
        if result is None:
            return []
        if not isinstance(result, list):
            raise ControlPlaneError(f"Unexpected params response: {result!r}")
        return result
