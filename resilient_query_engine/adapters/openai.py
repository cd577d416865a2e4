"""
OpenAI Chat Completions adapter.

The bearer token is sent in the Authorization header and is never logged.
URL citations attached to the message (`annotations` of type url_citation,
returned by search-enabled models) become citations.

Example config:
    surface:
      adapter: openai
      config:
        api_key: "${OPENAI_API_KEY}"
        model_name: gpt-4o-mini
"""

import logging
from typing import Any

from ..exceptions import SurfaceResponseError
from .base import HTTPSurfaceAdapter, SurfaceResponse
from .registry import AdapterRegistry

logger = logging.getLogger(__name__)

OPENAI_CHAT_COMPLETIONS_URL = "https://api.openai.com/v1/chat/completions"

DEFAULT_OPENAI_MODEL = "gpt-4o-mini"


class OpenAIAdapter(HTTPSurfaceAdapter):
    """
    OpenAI chat completions surface.

    Attributes:
        model_name: Model identifier
        system_prompt: Optional system message
        temperature: Sampling temperature (None uses the model default)
        base_url: Endpoint override for OpenAI-compatible servers
    """

    adapter_name = "openai"

    def __init__(
        self,
        api_key: str,
        model_name: str = DEFAULT_OPENAI_MODEL,
        system_prompt: str | None = None,
        temperature: float | None = None,
        base_url: str = OPENAI_CHAT_COMPLETIONS_URL,
    ):
        if not api_key or api_key.isspace():
            raise ValueError("api_key cannot be empty")
        if not model_name or model_name.isspace():
            raise ValueError("model_name cannot be empty")
        self.api_key = api_key
        self.model_name = model_name
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.base_url = base_url
        logger.info(f"Initialized OpenAI adapter for model: {model_name}")

    def build_request(self, query_text: str) -> dict:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": query_text})

        payload: dict[str, Any] = {"model": self.model_name, "messages": messages}
        if self.temperature is not None:
            payload["temperature"] = self.temperature

        return {
            "method": "POST",
            "url": self.base_url,
            "json": payload,
            "headers": {"Authorization": f"Bearer {self.api_key}"},
        }

    def parse_response(self, data: dict) -> SurfaceResponse:
        choices = data.get("choices")
        if not choices or not isinstance(choices, list) or not isinstance(choices[0], dict):
            raise SurfaceResponseError("OpenAI response missing 'choices' (parse error)")

        choice = choices[0]
        message = choice.get("message") or {}
        if message.get("refusal"):
            raise SurfaceResponseError(f"OpenAI refused under content policy: {message['refusal']}")
        if choice.get("finish_reason") == "content_filter":
            raise SurfaceResponseError("OpenAI response blocked by content filter")

        text = (message.get("content") or "").strip()
        if not text:
            raise SurfaceResponseError("OpenAI returned an empty response")

        citations = []
        for annotation in message.get("annotations") or []:
            cited = annotation.get("url_citation") if isinstance(annotation, dict) else None
            if isinstance(cited, dict) and cited.get("url"):
                citations.append({"title": cited.get("title", ""), "url": cited["url"]})

        return SurfaceResponse(
            response_text=text,
            citations=citations,
            raw={"model": data.get("model"), "usage": data.get("usage")},
        )


@AdapterRegistry.register
class OpenAIPlugin:
    """Registers the "openai" adapter."""

    @classmethod
    def plugin_name(cls) -> str:
        return "openai"

    @classmethod
    def adapter_kind(cls) -> str:
        return "api"

    @classmethod
    def create_adapter(cls, config: dict) -> OpenAIAdapter:
        return OpenAIAdapter(
            api_key=config["api_key"],
            model_name=config.get("model_name", DEFAULT_OPENAI_MODEL),
            system_prompt=config.get("system_prompt"),
            temperature=config.get("temperature"),
            base_url=config.get("base_url", OPENAI_CHAT_COMPLETIONS_URL),
        )

    @classmethod
    def validate_config(cls, config: dict) -> tuple[bool, str]:
        if not config.get("api_key"):
            return False, "Missing api_key (use ${OPENAI_API_KEY})"
        base_url = config.get("base_url", OPENAI_CHAT_COMPLETIONS_URL)
        if not str(base_url).startswith(("https://", "http://")):
            return False, f"base_url must be an http(s) URL (got: {base_url})"
        return True, ""

    @classmethod
    def required_env_vars(cls) -> list[str]:
        return ["OPENAI_API_KEY"]
