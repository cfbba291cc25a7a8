"""HTTP step executors.

- api_call: call a JSON API and return its parsed response
- webhook:  deliver a JSON payload to a webhook endpoint, optionally signed

Both send an Idempotency-Key derived from (run, step, attempt) so a
receiver can de-duplicate deliveries repeated after a timeout.
"""

import ipaddress
import json
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx
import structlog

from app.config import Settings
from core.constants import DEFAULT_EXPECTED_STATUS, ERROR_BODY_PREVIEW_CHARS
from core.exceptions import ExecutorError
from core.webhook_signing import sign_webhook_payload
from tasks.base_task import BaseStepExecutor, StepContext

logger = structlog.get_logger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"


def _is_private_ip(ip_str: str) -> bool:
    """Check if an IP address is private, loopback, link-local or reserved."""
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved


def validate_url_safety(url: str, allow_private: bool = False) -> None:
    """Validate an outbound URL for SSRF protection.

    Blocks non-HTTP(S) schemes always, and localhost or private IP
    literals unless ``allow_private`` is set.

    Raises:
        ValueError: If URL is unsafe
    """
    parsed = urlparse(url)

    if parsed.scheme.lower() not in ("http", "https"):
        raise ValueError(f"Unsupported scheme: {parsed.scheme or '(none)'}. Only HTTP and HTTPS allowed.")

    hostname = parsed.hostname
    if not hostname:
        raise ValueError("URL must have a valid hostname")

    if allow_private:
        return

    if hostname.lower() in ("localhost", "localhost.localdomain"):
        raise ValueError("Connections to localhost are not allowed")

    # Domain names are not resolved here
    if _is_private_ip(hostname):
        raise ValueError(f"Connections to private IP {hostname} are not allowed")


def encode_json_body(body: Any) -> Optional[bytes]:
    if body is None or body == "":
        return None
    return json.dumps(body, default=str, separators=(",", ":")).encode()


def parse_json_response(response: httpx.Response) -> Any:
    """Parsed JSON body; ``{"status": code}`` for 204 or non-JSON bodies."""
    if response.status_code == 204:
        return {"status": 204}
    try:
        return response.json()
    except ValueError:
        return {"status": response.status_code}


class HttpStepExecutor(BaseStepExecutor):
    """Shared plumbing for executors that talk HTTP.

    ``transport`` is passed straight to httpx.AsyncClient; tests use
    httpx.MockTransport to avoid the network.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.HTTP_TIMEOUT_SECONDS,
            transport=self.transport,
        )

    def _check_url(self, url: Optional[str]) -> str:
        if not url:
            raise ExecutorError("Missing required config: url")
        try:
            validate_url_safety(url, allow_private=self.settings.ALLOW_PRIVATE_NETWORK_TARGETS)
        except ValueError as e:
            raise ExecutorError(str(e)) from e
        return url

    async def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        content: Optional[bytes] = None,
        label: str = "HTTP",
    ) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(method, url, headers=headers, content=content)
        except httpx.TimeoutException as e:
            raise ExecutorError(f"{label} {method} {url} timed out") from e
        except httpx.HTTPError as e:
            raise ExecutorError(f"{label} {method} {url} failed: {e}") from e


class ApiCallExecutor(HttpStepExecutor):
    """Call an HTTP API.

    Config:
        url: Target URL (required)
        method: HTTP method (default: POST)
        headers: Extra headers, merged over the JSON content type
        body: JSON-serializable request body
        expected_status: Allowed status codes (default: 200, 201, 202, 204)
    """

    step_type = "api_call"
    display_name = "API Call"
    description = "Make an HTTP request to a JSON API"

    async def execute(self, config: Dict[str, Any], context: StepContext) -> Any:
        url = self._check_url(config.get("url"))
        method = str(config.get("method") or "POST").upper()
        headers = {
            "Content-Type": "application/json",
            **(config.get("headers") or {}),
            IDEMPOTENCY_HEADER: context.idempotency_key,
        }
        allowed = config.get("expected_status") or DEFAULT_EXPECTED_STATUS

        response = await self._send(method, url, headers, encode_json_body(config.get("body")), label="API")

        if response.status_code not in allowed:
            raise ExecutorError(
                f"API {method} {url} returned {response.status_code}: "
                f"{response.text[:ERROR_BODY_PREVIEW_CHARS]}"
            )
        return parse_json_response(response)

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["url"],
            "properties": {
                "url": {"type": "string", "description": "Target URL"},
                "method": {"type": "string", "enum": ["GET", "POST", "PUT", "PATCH", "DELETE"], "default": "POST"},
                "headers": {"type": "object"},
                "body": {"description": "JSON request body"},
                "expected_status": {"type": "array", "items": {"type": "integer"}},
            },
        }


class WebhookExecutor(HttpStepExecutor):
    """Deliver a payload to a webhook endpoint.

    Config:
        url: Webhook URL (required)
        method: HTTP method (default: POST)
        headers: Extra headers
        body: JSON-serializable payload
        secret: When set, the payload is HMAC-SHA256 signed
    """

    step_type = "webhook"
    display_name = "Webhook"
    description = "Send a (optionally signed) webhook"

    async def execute(self, config: Dict[str, Any], context: StepContext) -> Any:
        url = self._check_url(config.get("url"))
        method = str(config.get("method") or "POST").upper()
        content = encode_json_body(config.get("body"))

        headers = {
            "Content-Type": "application/json",
            **(config.get("headers") or {}),
            IDEMPOTENCY_HEADER: context.idempotency_key,
        }
        secret = config.get("secret")
        if secret:
            headers.update(sign_webhook_payload(content or b"", secret, delivery_id=context.idempotency_key))

        response = await self._send(method, url, headers, content, label="Webhook")

        if not response.is_success:
            raise ExecutorError(f"Webhook {url} returned {response.status_code}")

        logger.info("Webhook delivered", url=url, status=response.status_code, signed=bool(secret))
        return parse_json_response(response)

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["url"],
            "properties": {
                "url": {"type": "string"},
                "method": {"type": "string", "default": "POST"},
                "headers": {"type": "object"},
                "body": {"description": "JSON payload"},
                "secret": {"type": "string", "description": "HMAC signing secret"},
            },
        }


HTTP_EXECUTORS = {
    "api_call": ApiCallExecutor,
    "webhook": WebhookExecutor,
}
