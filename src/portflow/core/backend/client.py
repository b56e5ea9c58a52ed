from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from portflow.core.http import PortflowHTTPError, send_json

logger = logging.getLogger("portflow.backend")


class BackendClient:
    """Bearer-authenticated JSON client for the port backend REST API."""

    def __init__(
        self,
        base_url: str,
        credential: str,
        timeout_s: float = 15.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.credential = credential
        self.timeout_s = timeout_s
        self.client = client

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.credential:
            headers["Authorization"] = f"Bearer {self.credential}"
        return headers

    def request(self, method: str, path: str, *, json: Any = None, params: dict[str, Any] | None = None) -> Any:
        start = time.perf_counter()
        ok = False
        try:
            result = send_json(
                method,
                f"{self.base_url}{path}",
                headers=self._headers(),
                json=json,
                params={key: value for key, value in (params or {}).items() if value is not None} or None,
                timeout_s=self.timeout_s,
                client=self.client,
            )
            ok = True
            return result
        except PortflowHTTPError as exc:
            logger.info(
                "backend_call_failed",
                extra={"extra_fields": {"method": method, "path": path, "status_code": exc.status_code, "error": str(exc)}},
            )
            raise
        finally:
            logger.debug(
                "backend_call",
                extra={
                    "extra_fields": {
                        "method": method,
                        "path": path,
                        "ok": ok,
                        "duration_ms": int((time.perf_counter() - start) * 1000),
                    }
                },
            )

    def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return self.request("GET", path, params=params)

    def post(self, path: str, body: Any = None) -> Any:
        return self.request("POST", path, json=body)

    def put(self, path: str, body: Any = None) -> Any:
        return self.request("PUT", path, json=body)

    def delete(self, path: str) -> Any:
        return self.request("DELETE", path)
