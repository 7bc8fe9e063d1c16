from __future__ import annotations

import time

import httpx


def check_health(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Call a health endpoint.

    Accepts JSON ``{"status": "healthy"}`` or a plain-text ``healthy`` body
    (what the nginx ``/health`` location returns).
    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code != 200:
            return False, f"HTTP {resp.status_code}", latency_ms
        if resp.headers.get("content-type", "").startswith("application/json"):
            try:
                data = resp.json()
            except ValueError:
                return False, "Invalid JSON", latency_ms
            if isinstance(data, dict) and data.get("status") == "healthy":
                return True, "Healthy", latency_ms
            return False, f"Unhealthy payload: {data!r}", latency_ms
        if resp.text.strip().lower() == "healthy":
            return True, "Healthy", latency_ms
        return False, f"Unhealthy payload: {resp.text[:80]!r}", latency_ms
    except (httpx.ConnectError, httpx.ReadTimeout, httpx.ConnectTimeout):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


def wait_healthy(url: str, max_wait_s: float = 30.0, interval_s: float = 1.0, timeout_s: float = 2.0) -> tuple[bool, str]:
    """Poll ``url`` until it reports healthy or ``max_wait_s`` elapses."""
    deadline = time.time() + max_wait_s
    msg = "not checked"
    while True:
        ok, msg, _ = check_health(url, timeout_s=timeout_s)
        if ok or time.time() >= deadline:
            return ok, msg
        time.sleep(interval_s)
