"""Claude Vision client for reading payment screenshots."""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

import requests

from gomflow.core.config import ExtractionSettings
from gomflow.services.errors import ExtractionError, TransientExternalError

logger = logging.getLogger(__name__)


PAYMENT_SCREENSHOT_PROMPT = """You are reading a payment screenshot from a Southeast Asian mobile payment app or online banking system
(GCash, Maya, BPI, BDO, Maybank2u, CIMB, Touch 'n Go, Boost, GrabPay, ...).

Extract every completed payment shown. Ignore balances, fees and promotional amounts.
Currency symbols: ₱ or PHP for Philippine Peso, RM or MYR for Malaysian Ringgit.
{context}
Respond with JSON only:
{{
  "payments": [
    {{
      "amount": "1000.00",
      "currency": "PHP" or "MYR",
      "reference": "transaction or reference number as printed",
      "method": "payment app or bank name",
      "timestamp": "date/time as printed",
      "sender_name": "sender name if shown",
      "confidence": {{"amount": 0-1, "currency": 0-1, "reference": 0-1, "method": 0-1, "timestamp": 0-1}}
    }}
  ],
  "raw_text": "all legible text in reading order",
  "notes": "anything unusual (cropped, edited, blurry)"
}}
Return "payments": [] if no payment is visible."""


class VisionClient:
    """Sends one screenshot to Claude Vision and returns the parsed JSON reading."""

    def __init__(self, settings: ExtractionSettings) -> None:
        self.settings = settings

    @property
    def is_available(self) -> bool:
        return bool(self.settings.anthropic_api_key)

    def read_payment_screenshot(
        self,
        image_base64: str,
        content_type: str,
        context_hint: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self.settings.anthropic_api_key:
            raise ExtractionError("ANTHROPIC_API_KEY is not configured")

        headers = {
            "x-api-key": self.settings.anthropic_api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }
        content_blocks: List[Dict[str, Any]] = [
            {
                "type": "image",
                "source": {"type": "base64", "media_type": content_type, "data": image_base64},
            },
            {"type": "text", "text": _build_prompt(context_hint)},
        ]
        payload = {
            "model": self.settings.model,
            "max_tokens": 1500,
            "temperature": 0,
            "messages": [{"role": "user", "content": content_blocks}],
        }

        try:
            response = requests.post(
                self.settings.api_url,
                headers=headers,
                json=payload,
                timeout=self.settings.timeout_seconds,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientExternalError("vision", str(exc)) from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientExternalError("vision", f"HTTP {response.status_code}")
        if response.status_code >= 400:
            raise ExtractionError(f"vision provider rejected request: HTTP {response.status_code}")

        try:
            result = _parse_llm_json(_extract_message_text(response.json()))
        except ValueError as exc:
            # Model output is nondeterministic; another attempt can parse.
            raise TransientExternalError("vision", str(exc)) from exc
        result["provider"] = "anthropic"
        result["model"] = self.settings.model
        return result


def _build_prompt(context_hint: Optional[Dict[str, Any]]) -> str:
    lines = []
    hint = context_hint or {}
    if hint.get("currency"):
        lines.append(f"The buyer was asked to pay in {hint['currency']}.")
    if hint.get("payment_reference"):
        lines.append(f"The buyer may have written the reference {hint['payment_reference']} in the notes.")
    context = ("\n" + "\n".join(lines) + "\n") if lines else ""
    return PAYMENT_SCREENSHOT_PROMPT.format(context=context)


def _extract_message_text(data: Dict[str, Any]) -> str:
    parts = []
    for block in data.get("content") or []:
        if block.get("type") == "text":
            parts.append(block.get("text") or "")
    return "".join(parts)


def _parse_llm_json(text: str) -> Dict[str, Any]:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", text, re.DOTALL)
        if match:
            try:
                return json.loads(match.group(0))
            except json.JSONDecodeError:
                pass
        raise ValueError("LLM response was not valid JSON")
