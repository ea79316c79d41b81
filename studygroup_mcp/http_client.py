from typing import Any, Dict, Optional

import httpx

from .errors import ApiError


class HttpClient:
    """Thin wrapper around httpx for talking to the study-group API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    @staticmethod
    def _auth_header(token: Optional[str]) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"} if token else {}

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def build_request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Request:
        """Build a request without sending it, so hooks can edit headers first."""
        return httpx.Request(
            method,
            self.url_for(path),
            params=params,
            json=json_body,
            data=data,
            files=files,
            headers=headers,
            extensions={"timeout": httpx.Timeout(self.timeout).as_dict()},
        )

    async def send(self, request: httpx.Request) -> httpx.Response:
        async with httpx.AsyncClient(transport=self.transport) as client:
            return await client.send(request)

    @staticmethod
    def decode(response: httpx.Response) -> Dict[str, Any]:
        """Return the JSON body of a successful response or raise ApiError."""
        if response.is_success:
            if not response.content:
                return {}
            return response.json()
        payload: Any = None
        try:
            payload = response.json()
            message = payload.get("message") or payload.get("error") or payload
        except (ValueError, AttributeError):
            message = response.text
        raise ApiError(response.status_code, message, payload)

    async def request(
        self,
        method: str,
        path: str,
        *,
        access_token: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make a single HTTP request with an explicit (or no) access token.

        This bypasses the refresh coordinator and is meant for the auth
        endpoints themselves.
        """
        request = self.build_request(
            method,
            path,
            params=params,
            json_body=json_body,
            headers=self._auth_header(access_token),
        )
        response = await self.send(request)
        return self.decode(response)
