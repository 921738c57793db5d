import logging
from typing import Any, Dict, Optional

import httpx

from . import config
from .errors import GatewayError

_log = logging.getLogger("dinein.omise")


def _error_detail(resp: httpx.Response) -> tuple[str, Optional[str]]:
    # Omise answers errors as {"object": "error", "code": ..., "message": ...}
    try:
        j = resp.json()
        if isinstance(j, dict) and j.get("message"):
            return str(j.get("message")), (str(j["code"]) if j.get("code") else None)
    except ValueError:
        pass
    return (resp.text or f"HTTP {resp.status_code}")[:300], None


class OmiseClient:
    """
    Thin synchronous client for the Omise REST API.

    Amounts are minor currency units (satang for THB). Every failure, HTTP or
    transport, surfaces as GatewayError with the gateway's own message.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.secret_key = config.OMISE_SECRET_KEY if secret_key is None else secret_key
        self._client = httpx.Client(
            base_url=api_url or config.OMISE_API_URL,
            auth=(self.secret_key, ""),
            timeout=timeout if timeout is not None else config.OMISE_TIMEOUT_SECS,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.secret_key:
            raise GatewayError("payment gateway is not configured")
        try:
            r = self._client.request(method, path, json=payload)
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            msg, code = _error_detail(e.response)
            _log.warning(
                "omise request rejected",
                extra={"path": path, "upstream_status": e.response.status_code, "code": code},
            )
            raise GatewayError(msg, code=code, upstream_status=e.response.status_code) from e
        except httpx.RequestError as e:
            _log.warning("omise unreachable", extra={"path": path, "error": e.__class__.__name__})
            raise GatewayError(f"payment gateway unreachable: {e.__class__.__name__}") from e
        try:
            data = r.json()
        except ValueError as e:
            raise GatewayError("payment gateway returned invalid JSON") from e
        if not isinstance(data, dict):
            raise GatewayError("payment gateway returned an unexpected payload")
        if data.get("object") == "error":
            raise GatewayError(str(data.get("message") or "payment gateway error"), code=data.get("code"))
        return data

    def create_source(self, amount: int, currency: str, type: str = "promptpay") -> Dict[str, Any]:
        src = self._request("POST", "/sources", {"amount": amount, "currency": currency, "type": type})
        _log.info("omise source created", extra={"source_id": src.get("id"), "amount": amount})
        return src

    def create_charge(
        self,
        amount: int,
        currency: str,
        source_id: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        return_uri: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "source": source_id,
            "description": description,
            "metadata": metadata or {},
        }
        if return_uri:
            payload["return_uri"] = return_uri
        charge = self._request("POST", "/charges", payload)
        _log.info("omise charge created", extra={"charge_id": charge.get("id"), "charge_status": charge.get("status")})
        return charge

    def retrieve_charge(self, charge_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/charges/{charge_id}")
