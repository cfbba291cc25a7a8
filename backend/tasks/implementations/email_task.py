"""Email step executor (Resend-compatible HTTP API)."""

from typing import Any, Dict

import structlog

from core.constants import ERROR_BODY_PREVIEW_CHARS
from core.exceptions import ExecutorError
from tasks.base_task import StepContext
from tasks.implementations.http_task import (
    IDEMPOTENCY_HEADER,
    HttpStepExecutor,
    encode_json_body,
    parse_json_response,
)

logger = structlog.get_logger(__name__)


class EmailExecutor(HttpStepExecutor):
    """Send a transactional email.

    Config:
        to: Recipient address or list of addresses (required)
        subject: Subject line (required)
        html: HTML body
        text: Plain-text body
        from: Sender, defaults to EMAIL_FROM
        reply_to: Optional reply-to address
    """

    step_type = "email"
    display_name = "Send Email"
    description = "Send an email through the configured email API"

    async def execute(self, config: Dict[str, Any], context: StepContext) -> Any:
        for key in ("to", "subject"):
            if not config.get(key):
                raise ExecutorError(f"Missing required config: {key}")
        if not self.settings.RESEND_API_KEY:
            raise ExecutorError("Email provider not configured: RESEND_API_KEY is empty")

        payload = {
            "from": config.get("from") or self.settings.EMAIL_FROM,
            "to": config["to"],
            "subject": config["subject"],
            "html": config.get("html"),
            "text": config.get("text"),
            "reply_to": config.get("reply_to"),
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.settings.RESEND_API_KEY}",
            IDEMPOTENCY_HEADER: context.idempotency_key,
        }

        response = await self._send(
            "POST",
            self.settings.EMAIL_API_URL,
            headers,
            encode_json_body({k: v for k, v in payload.items() if v is not None}),
            label="Email",
        )

        if not response.is_success:
            raise ExecutorError(
                f"Email send failed ({response.status_code}): "
                f"{response.text[:ERROR_BODY_PREVIEW_CHARS]}"
            )

        logger.info("Email sent", run_id=context.run_id, step_id=context.step_id, to=config["to"])
        return parse_json_response(response)

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["to", "subject"],
            "properties": {
                "to": {"description": "Recipient address or list of addresses"},
                "subject": {"type": "string"},
                "html": {"type": "string"},
                "text": {"type": "string"},
                "from": {"type": "string"},
                "reply_to": {"type": "string"},
            },
        }
