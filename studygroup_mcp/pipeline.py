from typing import Any, Dict, Optional

import httpx

from .coordinator import RefreshCoordinator
from .http_client import HttpClient


class RequestPipeline:
    """Sends API calls through the refresh coordinator's pre-send and post-response hooks."""

    def __init__(self, client: HttpClient, coordinator: RefreshCoordinator):
        self.client = client
        self.coordinator = coordinator

    async def send(self, request: httpx.Request) -> httpx.Response:
        """
        Dispatch a built request:
        - attaches (and if needed refreshes) the bearer token first
        - on a 401, lets the coordinator refresh and re-sends exactly once
        - terminal session failures propagate from the coordinator
        """
        request = await self.coordinator.attach_credential(request)
        response = await self.client.send(request)
        decision = await self.coordinator.handle_response(response)
        if not decision.retry:
            return response
        response = await self.client.send(decision.request)
        # The retried request is marked; a second 401 raises instead of retrying
        await self.coordinator.handle_response(response)
        return response

    async def call(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        request = self.client.build_request(
            method,
            path,
            params=params,
            json_body=json_body,
            data=data,
            files=files,
        )
        response = await self.send(request)
        return self.client.decode(response)
