"""
AI step executor using Claude via the Anthropic Messages API.

Config:
    prompt: User prompt (required)
    system_prompt: Optional system prompt
    model: Model override (default: CLAUDE_MODEL)
    max_tokens: Response token limit (default: CLAUDE_MAX_TOKENS)
    output_format: "text" (default) or "json"; with "json" the reply is
        also parsed and returned under ``data``
"""

import json
import re
from typing import Any, Dict

import structlog

from core.constants import ERROR_BODY_PREVIEW_CHARS
from core.exceptions import ExecutorError
from tasks.base_task import StepContext
from tasks.implementations.http_task import HttpStepExecutor, encode_json_body

logger = structlog.get_logger(__name__)

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)


def extract_json(text: str) -> Any:
    """Extract JSON from a model reply that may wrap it in prose or a code fence.

    Raises:
        ValueError: if no JSON document can be found
    """
    if not text or not text.strip():
        raise ValueError("Empty response")

    clean = text.strip()
    try:
        return json.loads(clean)
    except json.JSONDecodeError:
        pass

    match = _FENCE_PATTERN.search(clean)
    if match:
        try:
            return json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            pass

    # First balanced object or array
    decoder = json.JSONDecoder()
    for opener in ("{", "["):
        start = clean.find(opener)
        if start == -1:
            continue
        try:
            value, _ = decoder.raw_decode(clean[start:])
            return value
        except json.JSONDecodeError:
            continue

    raise ValueError(f"Could not extract JSON from response: {clean[:ERROR_BODY_PREVIEW_CHARS]}")


class AIExecutor(HttpStepExecutor):
    """Send a prompt to Claude and return the text reply plus token usage."""

    step_type = "ai"
    display_name = "AI Prompt"
    description = "Send a prompt to Claude and capture the response"

    async def execute(self, config: Dict[str, Any], context: StepContext) -> Any:
        prompt = config.get("prompt")
        if not prompt:
            raise ExecutorError("Missing required config: prompt")
        if not self.settings.ANTHROPIC_API_KEY:
            raise ExecutorError("Claude API key not configured")

        body: Dict[str, Any] = {
            "model": config.get("model") or self.settings.CLAUDE_MODEL,
            "max_tokens": config.get("max_tokens") or self.settings.CLAUDE_MAX_TOKENS,
            "messages": [{"role": "user", "content": prompt}],
        }
        if config.get("system_prompt"):
            body["system"] = config["system_prompt"]

        headers = {
            "x-api-key": self.settings.ANTHROPIC_API_KEY,
            "anthropic-version": self.settings.ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

        response = await self._send(
            "POST", self.settings.ANTHROPIC_API_URL, headers, encode_json_body(body), label="AI"
        )
        if not response.is_success:
            raise ExecutorError(
                f"AI call failed ({response.status_code}): "
                f"{response.text[:ERROR_BODY_PREVIEW_CHARS]}"
            )

        data = response.json()
        content = data.get("content") or []
        text = content[0].get("text", "") if content and content[0].get("type") == "text" else ""
        output: Dict[str, Any] = {"text": text, "usage": data.get("usage")}

        if config.get("output_format") == "json":
            try:
                output["data"] = extract_json(text)
            except ValueError as e:
                raise ExecutorError(f"AI response is not valid JSON: {e}") from e

        logger.info(
            "AI step completed",
            run_id=context.run_id,
            step_id=context.step_id,
            model=body["model"],
            usage=data.get("usage"),
        )
        return output

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["prompt"],
            "properties": {
                "prompt": {"type": "string", "description": "The prompt to send to Claude"},
                "system_prompt": {"type": "string", "description": "Optional system prompt"},
                "model": {"type": "string", "description": "Model override"},
                "max_tokens": {"type": "integer", "description": "Max response tokens"},
                "output_format": {"type": "string", "enum": ["text", "json"], "default": "text"},
            },
        }
