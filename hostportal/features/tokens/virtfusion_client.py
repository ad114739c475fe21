"""
VirtFusion token account client.

Implements TokenAccountProvider against the VirtFusion self-service API:
- GET  /selfService/hourlyStats/byUserExtRelationId/{id}  (balance at data.credit.tokens)
- POST /selfService/credit/byUserExtRelationId/{id}       (positive tokens credit, negative debit)
"""
from __future__ import annotations

from typing import Optional, Any, Dict

import httpx

from hostportal.core.config import settings
from hostportal.features.tokens.provider import TokenAccountError, TokenOperation

REFERENCE_PREFIX = "hostportal"


class VirtFusionTokenClient:
    """httpx-backed token account client."""

    def __init__(
        self,
        base_url: str,
        api_token: str,
        *,
        timeout: float = 30.0,
        verify: bool = True,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not base_url:
            raise TokenAccountError("VIRTFUSION_API_URL is not configured")
        if not api_token:
            raise TokenAccountError("VIRTFUSION_API_TOKEN is not configured")
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            verify=verify,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise TokenAccountError(f"VirtFusion request failed: {e}") from e

        if response.status_code >= 300:
            raise TokenAccountError(
                f"VirtFusion {method} {path} failed: {response.status_code} {response.text}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise TokenAccountError(f"VirtFusion returned invalid JSON: {e}") from e

    def get_balance(self, external_id: str) -> int:
        body = self._request("GET", f"/selfService/hourlyStats/byUserExtRelationId/{external_id}")
        try:
            tokens = body["data"]["credit"]["tokens"]
        except (KeyError, TypeError) as e:
            raise TokenAccountError("VirtFusion balance response missing data.credit.tokens") from e
        try:
            return int(round(float(tokens)))
        except (TypeError, ValueError) as e:
            raise TokenAccountError(f"VirtFusion balance is not numeric: {tokens!r}") from e

    def _post_credit(self, external_id: str, tokens: int, reference: str) -> TokenOperation:
        payload = {
            "tokens": tokens,
            "reference_1": reference,
            "reference_2": REFERENCE_PREFIX,
        }
        body = self._request("POST", f"/selfService/credit/byUserExtRelationId/{external_id}", json=payload)
        data = body.get("data") if isinstance(body, dict) else None
        operation_id = None
        if isinstance(data, dict) and data.get("id") is not None:
            operation_id = str(data["id"])
        return TokenOperation(
            external_id=external_id,
            tokens=tokens,
            reference=reference,
            external_operation_id=operation_id,
            raw=body if isinstance(body, dict) else {},
        )

    def credit(self, external_id: str, tokens: int, reference: str) -> TokenOperation:
        if tokens <= 0:
            raise TokenAccountError("Credit amount must be positive")
        return self._post_credit(external_id, tokens, reference)

    def debit(self, external_id: str, tokens: int, reference: str) -> TokenOperation:
        if tokens <= 0:
            raise TokenAccountError("Debit amount must be positive")
        return self._post_credit(external_id, -tokens, reference)


def get_token_client() -> VirtFusionTokenClient:
    """Build the configured token client."""
    return VirtFusionTokenClient(
        settings.VIRTFUSION_API_URL or "",
        settings.VIRTFUSION_API_TOKEN or "",
        timeout=settings.VIRTFUSION_TIMEOUT_SECONDS,
        verify=settings.VIRTFUSION_SSL_VERIFY,
    )
