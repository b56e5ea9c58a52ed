from __future__ import annotations

import os
import random
import threading
from typing import Any

import httpx

from .errors import PermanentHTTPError, TransientHTTPError, UnauthorizedHTTPError

_TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}
_DEFAULT_TIMEOUT_S = 15.0
_DEFAULT_CONNECT_TIMEOUT_S = 5.0
_DEFAULT_USER_AGENT = "portflow-orchestrator/1.0"

_client: httpx.Client | None = None
_client_lock = threading.Lock()


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def build_timeout(total_s: float | None = None) -> httpx.Timeout:
    connect_s = max(0.1, _get_float_env("PORTFLOW_HTTP_CONNECT_TIMEOUT_S", _DEFAULT_CONNECT_TIMEOUT_S))
    read_total = max(0.1, total_s if total_s is not None else _get_float_env("PORTFLOW_TOOL_TIMEOUT_S", _DEFAULT_TIMEOUT_S))
    return httpx.Timeout(read_total, connect=min(connect_s, read_total))


def get_http_client() -> httpx.Client:
    global _client
    if _client is not None:
        return _client

    with _client_lock:
        if _client is None:
            user_agent = os.getenv("PORTFLOW_HTTP_USER_AGENT", _DEFAULT_USER_AGENT)
            _client = httpx.Client(timeout=build_timeout(), headers={"User-Agent": user_agent})
    return _client


def send_json(
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    json: Any = None,
    params: dict[str, Any] | None = None,
    timeout_s: float | None = None,
    client: httpx.Client | None = None,
) -> Any:
    """Perform exactly one request and classify the outcome.

    Retrying is left to the caller: a transient failure raises
    ``TransientHTTPError``, a rejected credential ``UnauthorizedHTTPError`` and
    any other non-2xx ``PermanentHTTPError``.
    """
    http = client or get_http_client()
    label = f"{method.upper()} {httpx.URL(url).path}"
    try:
        response = http.request(
            method,
            url,
            headers=headers,
            json=json,
            params=params,
            timeout=build_timeout(timeout_s),
        )
    except httpx.TimeoutException as exc:
        raise TransientHTTPError(f"timeout:{label}") from exc
    except (httpx.ConnectError, httpx.NetworkError, httpx.RemoteProtocolError) as exc:
        raise TransientHTTPError(f"network_error:{label}:{exc.__class__.__name__}") from exc
    except httpx.HTTPError as exc:
        raise PermanentHTTPError(f"http_error:{label}:{exc.__class__.__name__}") from exc

    status = response.status_code
    if 200 <= status < 300:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise PermanentHTTPError(f"invalid_json:{label}", status_code=status) from exc

    detail = _error_detail(response)
    if status == 401:
        raise UnauthorizedHTTPError(f"unauthorized:{label}", status_code=status)
    if status in _TRANSIENT_STATUS_CODES:
        raise TransientHTTPError(f"status_{status}:{label}{detail}", status_code=status)
    raise PermanentHTTPError(f"status_{status}:{label}{detail}", status_code=status)


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return ""
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("error")
        if message:
            return f":{message}"
    return ""


def backoff_delay(attempt: int, base_s: float, max_s: float) -> float:
    return min(max_s, base_s * (2**attempt) * (0.5 + random.random()))
