"""
Google Gemini adapter (generateContent).

The API key is sent as the `key` query parameter and is never logged.
Optional Google Search grounding (`grounding: true`) turns grounding chunks
into citations.

Example config:
    surface:
      adapter: gemini
      config:
        api_key: "${GEMINI_API_KEY}"
        model_name: gemini-2.0-flash
        grounding: true
"""

import logging
from typing import Any

from ..exceptions import SurfaceResponseError
from .base import HTTPSurfaceAdapter, SurfaceResponse
from .registry import AdapterRegistry

logger = logging.getLogger(__name__)

GEMINI_API_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

DEFAULT_GEMINI_MODEL = "gemini-2.0-flash"

SAFETY_FINISH_REASONS = frozenset({"SAFETY", "RECITATION", "PROHIBITED_CONTENT", "BLOCKLIST"})


class GeminiAdapter(HTTPSurfaceAdapter):
    """
    Gemini generateContent surface.

    Attributes:
        model_name: Gemini model identifier
        system_prompt: Optional system instruction
        grounding: Enable the google_search tool
        temperature: Sampling temperature (None uses the model default)
    """

    adapter_name = "gemini"

    def __init__(
        self,
        api_key: str,
        model_name: str = DEFAULT_GEMINI_MODEL,
        system_prompt: str | None = None,
        grounding: bool = False,
        temperature: float | None = None,
    ):
        if not api_key or api_key.isspace():
            raise ValueError("api_key cannot be empty")
        if not model_name or model_name.isspace():
            raise ValueError("model_name cannot be empty")
        self.api_key = api_key
        self.model_name = model_name
        self.system_prompt = system_prompt
        self.grounding = grounding
        self.temperature = temperature
        logger.info(f"Initialized Gemini adapter for model: {model_name}")

    def build_request(self, query_text: str) -> dict:
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": query_text}]}],
        }
        if self.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": self.system_prompt}]}
        if self.temperature is not None:
            payload["generationConfig"] = {"temperature": self.temperature}
        if self.grounding:
            payload["tools"] = [{"google_search": {}}]

        return {
            "method": "POST",
            "url": f"{GEMINI_API_BASE_URL}/models/{self.model_name}:generateContent",
            "json": payload,
            "params": {"key": self.api_key},
        }

    def parse_response(self, data: dict) -> SurfaceResponse:
        candidates = data.get("candidates")
        if not candidates or not isinstance(candidates, list):
            feedback = data.get("promptFeedback") or {}
            if feedback.get("blockReason"):
                raise SurfaceResponseError(
                    f"Gemini blocked the prompt: blockReason={feedback['blockReason']}"
                )
            raise SurfaceResponseError("Gemini response missing 'candidates' (parse error)")

        candidate = candidates[0]
        if not isinstance(candidate, dict):
            raise SurfaceResponseError("Gemini candidate has an unexpected structure (parse error)")

        finish_reason = candidate.get("finishReason")
        if finish_reason in SAFETY_FINISH_REASONS:
            raise SurfaceResponseError(
                f"Gemini blocked content due to safety policy: finishReason={finish_reason}"
            )

        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(
            part.get("text", "") for part in parts if isinstance(part, dict)
        ).strip()
        if not text:
            raise SurfaceResponseError(
                f"Gemini returned an empty response (finishReason={finish_reason})"
            )

        return SurfaceResponse(
            response_text=text,
            citations=self._grounding_citations(candidate),
            raw={"finish_reason": finish_reason, "usage": data.get("usageMetadata")},
        )

    @staticmethod
    def _grounding_citations(candidate: dict) -> list[dict]:
        metadata = candidate.get("groundingMetadata") or {}
        citations = []
        for chunk in metadata.get("groundingChunks") or []:
            web = chunk.get("web") if isinstance(chunk, dict) else None
            if isinstance(web, dict) and web.get("uri"):
                citations.append({"title": web.get("title", ""), "url": web["uri"]})
        return citations


@AdapterRegistry.register
class GeminiPlugin:
    """Registers the "gemini" adapter."""

    @classmethod
    def plugin_name(cls) -> str:
        return "gemini"

    @classmethod
    def adapter_kind(cls) -> str:
        return "api"

    @classmethod
    def create_adapter(cls, config: dict) -> GeminiAdapter:
        return GeminiAdapter(
            api_key=config["api_key"],
            model_name=config.get("model_name", DEFAULT_GEMINI_MODEL),
            system_prompt=config.get("system_prompt"),
            grounding=bool(config.get("grounding", False)),
            temperature=config.get("temperature"),
        )

    @classmethod
    def validate_config(cls, config: dict) -> tuple[bool, str]:
        if not config.get("api_key"):
            return False, "Missing api_key (use ${GEMINI_API_KEY})"
        temperature = config.get("temperature")
        if temperature is not None and not 0.0 <= float(temperature) <= 2.0:
            return False, f"temperature must be between 0.0 and 2.0 (got: {temperature})"
        return True, ""

    @classmethod
    def required_env_vars(cls) -> list[str]:
        return ["GEMINI_API_KEY"]
