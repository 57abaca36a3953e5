from __future__ import annotations

import time

import httpx


def check_health(url: str, timeout_s: float = 2.0, transport: httpx.BaseTransport | None = None) -> tuple[bool, str, float | None]:
    """Call a service health endpoint.

    Any 2xx answer with a JSON object body counts as alive; a ``status`` field
    of ``ok`` or ``healthy`` is reported back. Returns (is_healthy, message,
    latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False, transport=transport) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if not 200 <= resp.status_code < 300:
            return False, f"HTTP {resp.status_code}", latency_ms
        try:
            data = resp.json()
        except ValueError:
            return False, "Invalid JSON", latency_ms
        if not isinstance(data, dict):
            return False, f"Unexpected payload: {data!r}", latency_ms
        status = str(data.get("status", "")).lower()
        if status and status not in {"ok", "healthy", "up"}:
            return False, f"Unhealthy payload: {data!r}", latency_ms
        return True, status or "alive", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}", latency_ms
