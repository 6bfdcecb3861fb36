"""HTTP Request task implementation.

Calls external APIs from a workflow action step. Supports the common
methods, headers, query params, JSON/form/text bodies, bearer and API key
auth, and status code validation.
"""

import ipaddress
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx
import structlog

from tasks.base_task import BaseTask, TaskResult

logger = structlog.get_logger(__name__)

_FORBIDDEN_PORTS = (5432, 6379)  # postgres, redis


def _validate_url_safety(url: str) -> None:
    """Reject URLs that point at the local host or private networks.

    Raises:
        ValueError: If URL is unsafe
    """
    parsed = urlparse(url)
    if parsed.scheme.lower() not in ("http", "https"):
        raise ValueError(f"Unsupported scheme: {parsed.scheme}. Only HTTP and HTTPS allowed.")

    hostname = parsed.hostname
    if not hostname:
        raise ValueError("URL must have a valid hostname")
    if hostname.lower() == "localhost":
        raise ValueError("Connections to localhost are not allowed")

    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        ip = None  # a domain name
    if ip is not None and (ip.is_private or ip.is_loopback or ip.is_reserved):
        raise ValueError(f"Connections to private IP {hostname} are not allowed")

    if parsed.port in _FORBIDDEN_PORTS:
        raise ValueError(f"Connections to internal port {parsed.port} are not allowed")


class HttpRequestTask(BaseTask):
    """Execute an HTTP request.

    Params:
        url: Target URL (required)
        method: GET, POST, PUT, PATCH, DELETE (default: GET)
        headers: Dict of HTTP headers
        params: URL query parameters
        body: Request body (for POST/PUT/PATCH)
        body_type: "json" | "form" | "text" (default: json)
        auth: {"type": "bearer", "token": ...} or {"type": "api_key", "key": ..., "header": ...}
        timeout: Request timeout in seconds (default: 30)
        expect_status: List of acceptable status codes
    """

    task_type = "http_request"
    display_name = "HTTP Request"
    description = "Make HTTP requests to APIs and web services"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    async def execute(self, params: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> TaskResult:
        url = params.get("url")
        if not url:
            return TaskResult(success=False, error="Missing required param: url")

        try:
            _validate_url_safety(url)
        except ValueError as e:
            logger.warning("Blocked unsafe URL", url=url, reason=str(e))
            return TaskResult(success=False, error=str(e))

        method = str(params.get("method", "GET")).upper()
        headers = dict(params.get("headers") or {})
        timeout = params.get("timeout", 30)

        auth = params.get("auth") or {}
        if auth.get("type") == "bearer":
            headers["Authorization"] = f"Bearer {auth['token']}"
        elif auth.get("type") == "api_key":
            headers[auth.get("header", "X-API-Key")] = auth["key"]

        kwargs: Dict[str, Any] = {
            "method": method,
            "url": url,
            "headers": headers,
            "params": params.get("params") or {},
            "timeout": timeout,
        }
        body = params.get("body")
        if body is not None and method in ("POST", "PUT", "PATCH"):
            body_type = params.get("body_type", "json")
            if body_type == "json":
                kwargs["json"] = body
            elif body_type == "form":
                kwargs["data"] = body
            else:
                kwargs["content"] = str(body)

        try:
            async with httpx.AsyncClient(transport=self._transport, follow_redirects=True) as client:
                response = await client.request(**kwargs)
        except httpx.TimeoutException:
            return TaskResult(success=False, error=f"Request timed out after {timeout}s")
        except httpx.HTTPError as e:
            return TaskResult(success=False, error=f"HTTP request failed: {e}")

        try:
            data: Any = response.json()
        except ValueError:
            data = response.text

        output = {
            "status_code": response.status_code,
            "headers": dict(response.headers),
            "data": data,
            "url": str(response.url),
        }

        expected = params.get("expect_status")
        if expected:
            success = response.status_code in expected
        else:
            success = 200 <= response.status_code < 400

        return TaskResult(
            success=success,
            output=output,
            error=None if success else f"HTTP {response.status_code}",
        )


HTTP_TASK_TYPES = {
    "http_request": HttpRequestTask,
}
