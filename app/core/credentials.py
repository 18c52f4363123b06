"""
Provider Credentials

Resolves vendor API keys from the layered configuration. A missing key is a
failed-precondition error for the caller; keys are only ever logged by prefix.
"""

from __future__ import annotations
import logging
from typing import Optional

from app.core.config import Config, config
from app.core.errors import FailedPreconditionError, InvalidArgumentError

logger = logging.getLogger("functions.credentials")

PROJECT_KEY_PREFIX = "sk-proj-"


def key_prefix(key: Optional[str], length: int = 7) -> str:
    if not key:
        return "<none>"
    return f"{key[:length]}..."


class CredentialResolver:
    """Looks up provider keys in a fixed precedence order."""

    def __init__(self, cfg: Config = config):
        self._config = cfg

    def _require(self, provider: str, key: Optional[str]) -> str:
        if not key:
            logger.error(f"{provider} API key is not configured")
            raise FailedPreconditionError(f"{provider} API key is not configured")
        return key

    def openai(self, substitute_project_keys: bool = True) -> str:
        """
        Project-scoped keys (sk-proj-) are swapped for the configured
        alternative or standard key when substitution is on.
        """
        key = self._config.resolve("openai", "apikey", "OPENAI_API_KEY")

        if substitute_project_keys and key and key.startswith(PROJECT_KEY_PREFIX):
            logger.info("OpenAI key is project-scoped, using alternative key")
            key = (
                self._config.resolve("openai", "alternative_key", "OPENAI_ALTERNATIVE_KEY")
                or self._config.resolve("openai", "standardkey")
            )

        key = self._require("OpenAI", key)
        logger.debug(f"OpenAI key: {key_prefix(key)}")
        return key

    def deepseek(self) -> str:
        key = self._require("DeepSeek", self._config.resolve("deepseek", "newkey", "DEEPSEEK_API_KEY"))
        if not key.startswith("sk-"):
            logger.error(f"DeepSeek API key has an unexpected format: {key_prefix(key, 3)}")
            raise InvalidArgumentError("DeepSeek API key format is invalid")
        return key

    def vision(self) -> str:
        key = (
            self._config.resolve("google.vision", "apikey", "GOOGLE_VISION_API_KEY")
            or self._config.resolve("google", "vision_key")
        )
        return self._require("Google Vision", key)

    def mistral(self) -> str:
        return self._require("Mistral", self._config.resolve("mistral", "apikey", "MISTRAL_API_KEY"))

    def for_provider(self, provider: str) -> str:
        resolvers = {
            "openai": self.openai,
            "deepseek": self.deepseek,
            "vision": self.vision,
            "mistral": self.mistral,
        }
        if provider not in resolvers:
            raise InvalidArgumentError(f"Unsupported provider: {provider}")
        return resolvers[provider]()


credentials = CredentialResolver()
