"""
InterServer DNS client.

GET /dns lists every zone on the account; DELETE /dns/{id} removes one.
Authenticated with the X-API-KEY header.
"""
from __future__ import annotations

from typing import List, Optional

import httpx

from hostportal.core.config import settings
from hostportal.features.provisioning.provider import ExternalResource, ProvisioningError


class InterServerDnsClient:
    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://my.interserver.net/apiv2",
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not api_key:
            raise ProvisioningError("INTERSERVER_API_KEY is not configured")
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={
                "X-API-KEY": api_key,
                "Accept": "application/json",
            },
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str) -> httpx.Response:
        try:
            response = self._client.request(method, path)
        except httpx.HTTPError as e:
            raise ProvisioningError(f"InterServer request failed: {e}") from e
        if response.status_code >= 300:
            raise ProvisioningError(
                f"InterServer {method} {path} failed: {response.status_code} {response.text}",
                status_code=response.status_code,
            )
        return response

    def list_resources(self) -> List[ExternalResource]:
        response = self._request("GET", "/dns")
        try:
            body = response.json()
        except ValueError as e:
            raise ProvisioningError(f"InterServer returned invalid JSON: {e}") from e
        if not isinstance(body, list):
            raise ProvisioningError("InterServer /dns did not return a list")

        resources = []
        for item in body:
            try:
                resources.append(ExternalResource(id=int(item["id"]), name=str(item["name"])))
            except (KeyError, TypeError, ValueError):
                continue
        return resources

    def delete_resource(self, resource_id: int) -> None:
        self._request("DELETE", f"/dns/{resource_id}")


def get_provisioning_client() -> InterServerDnsClient:
    """Build the configured provisioning client."""
    return InterServerDnsClient(
        settings.INTERSERVER_API_KEY or "",
        base_url=settings.INTERSERVER_API_URL,
        timeout=settings.INTERSERVER_TIMEOUT_SECONDS,
    )
