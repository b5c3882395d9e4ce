from __future__ import annotations

import json
import time
from typing import Any

from citeloop.llm_client import client as llm_client, get_model
from citeloop.services import logger as log_service


class LLMAgent:
    """Shared plumbing for components that call the LLM.

    Holds `self.client = None` so tests can inject a mock; the shared client is
    used otherwise. Subclasses own their prompts and their fallbacks.
    """

    name: str = "agent"

    def __init__(self, model: str | None = None, client: Any | None = None):
        self.model = model or get_model()
        self.client = client

    async def _complete(
        self,
        caller: str,
        *,
        system: str,
        user: str,
        max_tokens: int = 1200,
        model: str | None = None,
    ) -> str:
        """Run one completion and return its text. Errors propagate to the caller."""
        active_client = self.client or llm_client()
        used_model = model or self.model
        t0 = time.monotonic()
        try:
            response = await active_client.messages.create(
                model=used_model,
                max_tokens=max_tokens,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
        except Exception as exc:
            log_service.log_llm_call(
                model=used_model,
                caller=caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(exc) or type(exc).__name__,
            )
            raise
        self._log_call(caller, response, int((time.monotonic() - t0) * 1000), used_model)
        return self._extract_response_text(response)

    def _log_call(
        self,
        caller: str,
        response: Any,
        elapsed_ms: int,
        model_name: str | None = None,
    ) -> None:
        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "input_tokens", 0) if usage else 0
        output_tokens = getattr(usage, "output_tokens", 0) if usage else 0
        log_service.log_llm_call(
            model=model_name or self.model,
            caller=caller,
            input_tokens=input_tokens if isinstance(input_tokens, int) else 0,
            output_tokens=output_tokens if isinstance(output_tokens, int) else 0,
            duration_ms=elapsed_ms,
        )

    @staticmethod
    def _normalize_text_list(
        raw_values: Any, *, max_items: int, min_len: int = 1
    ) -> list[str]:
        if not isinstance(raw_values, list):
            return []
        cleaned: list[str] = []
        seen: set[str] = set()
        for item in raw_values:
            if not isinstance(item, str):
                continue
            value = " ".join(item.split()).strip()
            if len(value) < min_len:
                continue
            key = value.lower()
            if key in seen:
                continue
            seen.add(key)
            cleaned.append(value)
            if len(cleaned) >= max_items:
                break
        return cleaned

    @staticmethod
    def _extract_response_text(response: Any) -> str:
        blocks = getattr(response, "content", None) or []
        text_parts: list[str] = []
        for block in blocks:
            btype = getattr(block, "type", None)
            btext = getattr(block, "text", None)
            is_text_like_type = btype in (None, "text") or not isinstance(btype, str)
            if is_text_like_type and isinstance(btext, str) and btext.strip():
                text_parts.append(btext)
        return "\n".join(text_parts).strip()

    @staticmethod
    def _strip_code_fence(raw_text: str) -> str:
        text = raw_text.strip()
        if text.startswith("```"):
            parts = text.split("```")
            if len(parts) >= 2:
                text = parts[1]
            if text.startswith("json"):
                text = text[4:]
            text = text.strip()
        return text

    @classmethod
    def _extract_json_object(cls, raw_text: str) -> dict[str, Any]:
        text = cls._strip_code_fence(raw_text)
        start = text.find("{")
        end = text.rfind("}")
        if start < 0 or end <= start:
            raise json.JSONDecodeError("object not found", text, 0)
        parsed = json.loads(text[start : end + 1])
        if not isinstance(parsed, dict):
            raise json.JSONDecodeError("not an object", text, 0)
        return parsed

    @classmethod
    def _extract_json_array(cls, raw_text: str) -> list[Any]:
        text = cls._strip_code_fence(raw_text)
        start = text.find("[")
        end = text.rfind("]")
        if start < 0 or end <= start:
            raise json.JSONDecodeError("array not found", text, 0)
        parsed = json.loads(text[start : end + 1])
        if not isinstance(parsed, list):
            raise json.JSONDecodeError("not an array", text, 0)
        return parsed
