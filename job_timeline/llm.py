"""OpenRouter chat-completions client used by the structured classifier."""

import json
import logging
import os
import re
from typing import Any, Optional

import requests

from .config import Config
from .errors import ClassifierError, ConfigurationError, ModelUnavailableError

logger = logging.getLogger(__name__)

API_KEY_ENV = "OPENROUTER_API_KEY"

# Status codes meaning "this model/key will not work no matter how often we retry"
UNAVAILABLE_STATUS_CODES = {400, 401, 402, 403, 404}


def parse_json_response(content: str) -> Any:
    """Parse JSON from a model reply, tolerating markdown code fences."""
    content = re.sub(r"^```(?:json)?\s*", "", content.strip())
    content = re.sub(r"\s*```$", "", content)
    content = content.strip()
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        # Models sometimes wrap the object in prose
        match = re.search(r"\{.*\}", content, re.DOTALL)
        if match:
            return json.loads(match.group(0))
        raise


class LLMClient:
    """Thin wrapper around the OpenRouter API with deterministic settings."""

    def __init__(
        self,
        model_id: str,
        api_key: str,
        api_url: str = "https://openrouter.ai/api/v1/chat/completions",
        timeout: float = 20.0,
    ):
        self.model_id = model_id
        self.api_key = api_key
        self.api_url = api_url
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: Config, model_id: Optional[str] = None) -> "LLMClient":
        model_id = model_id or config.model_id
        if model_id not in config.allowed_models:
            raise ConfigurationError(f"Model {model_id!r} is not in allowed_models")

        api_key = os.environ.get(API_KEY_ENV)
        if not api_key:
            raise ConfigurationError(f"{API_KEY_ENV} is not set")

        return cls(
            model_id=model_id,
            api_key=api_key,
            api_url=config.llm_api_url,
            timeout=config.llm_timeout_seconds,
        )

    def complete(self, system_prompt: str, user_prompt: str, max_tokens: int = 150) -> str:
        """Return the raw text of the first completion choice."""
        try:
            response = requests.post(
                self.api_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.model_id,
                    "messages": [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    "max_tokens": max_tokens,
                    "temperature": 0,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ClassifierError(f"LLM request failed: {e}") from e

        if response.status_code in UNAVAILABLE_STATUS_CODES:
            raise ModelUnavailableError(
                f"Model {self.model_id} unavailable (HTTP {response.status_code}): {response.text[:200]}"
            )
        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            raise ClassifierError(f"LLM request failed: {e}") from e

        try:
            result = response.json()
            content = result["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ClassifierError(f"Unexpected LLM response shape: {e}") from e

        logger.debug(f"LLM ({self.model_id}) replied: {content[:200]}")
        return content

    def complete_json(self, system_prompt: str, user_prompt: str, max_tokens: int = 150) -> Any:
        content = self.complete(system_prompt, user_prompt, max_tokens)
        try:
            return parse_json_response(content)
        except json.JSONDecodeError as e:
            raise ClassifierError(f"Failed to parse LLM response as JSON: {content[:200]}") from e
