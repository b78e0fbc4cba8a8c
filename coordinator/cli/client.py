"""HTTP client for the coordinator API."""

import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_URL = "http://localhost:8080"
# accept/cancel wait for the ledger to confirm
DEFAULT_TIMEOUT = 300.0


class CoordinatorAPIError(Exception):
    """Non-2xx response from the coordinator."""

    def __init__(self, status_code: int, body: Any):
        self.status_code = status_code
        self.body = body
        message = body.get("error") if isinstance(body, dict) else body
        super().__init__(f"HTTP {status_code}: {message}")


class CoordinatorClient:
    """Thin wrapper over the coordinator's REST endpoints."""

    def __init__(
        self,
        base_url: str = DEFAULT_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        logger.debug(f"{method} {self.base_url}{path}")
        response = self._http.request(method, path, **kwargs)
        try:
            body = response.json()
        except ValueError:
            body = response.text
        if response.is_error:
            raise CoordinatorAPIError(response.status_code, body)
        return body

    # === Requester ===

    def post_job(self, spec: Dict[str, Any], requester_addr: str) -> Dict[str, Any]:
        return self._request("POST", "/jobs", json=spec, headers={"x-requester-addr": requester_addr})

    def fund(self, job_id: str, tx: Optional[str] = None) -> Dict[str, Any]:
        return self._request("POST", f"/jobs/{job_id}/fund", json={"tx": tx})

    def accept(self, job_id: str, provider_addr: Optional[str] = None) -> Dict[str, Any]:
        return self._request("POST", f"/jobs/{job_id}/accept", json={"provider": provider_addr})

    def cancel(self, job_id: str, requester_addr: Optional[str] = None) -> Dict[str, Any]:
        headers = {"x-requester-addr": requester_addr} if requester_addr else None
        return self._request("POST", f"/jobs/{job_id}/cancel", headers=headers)

    # === Provider ===

    def match(self, job_id: str, provider_addr: str) -> Dict[str, Any]:
        return self._request("POST", "/match", json={"jobId": job_id, "providerAddr": provider_addr})

    def submit_result(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/results", json=payload)

    # === Queries ===

    def status(self, job_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/jobs/{job_id}")

    def transitions(self, job_id: str) -> List[Dict[str, Any]]:
        return self._request("GET", f"/jobs/{job_id}/transitions")["transitions"]

    def list_jobs(
        self,
        status: Optional[str] = None,
        provider_addr: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params = {"status": status, "provider": provider_addr, "limit": limit}
        params = {k: v for k, v in params.items() if v is not None}
        return self._request("GET", "/jobs", params=params)["jobs"]
