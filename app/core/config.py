"""
Application Configuration

Central configuration for the AI proxy and subscription functions.

Values come from two layers:
- Environment variables (always win when set)
- A structured runtime config document, loaded from RUNTIME_CONFIG (inline
  JSON) or RUNTIME_CONFIG_PATH (a JSON file), laid out by section with
  optional per-environment blocks:

      {
        "openai": {"apikey": "..."},
        "stripe": {"prod": {"secret_key": "..."}, "test": {"secret_key": "..."}},
        "client": {"domain": "https://example.com"}
      }
"""

from __future__ import annotations
import os
import json
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
from enum import Enum

logger = logging.getLogger("functions.config")


class Environment(str, Enum):
    """Deployment environments."""
    TEST = "test"
    PROD = "prod"


# QUOTA_ENFORCE_<PROVIDER> defaults. Gemini only counts and logs.
QUOTA_ENFORCE_DEFAULTS = {
    "openai": True,
    "deepseek": True,
    "vision": True,
    "mistral": True,
    "gemini": False,
}


def _flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("true", "1", "yes")


def load_runtime_config() -> Dict[str, Any]:
    """Load the structured runtime config document, if one is configured."""
    inline = os.getenv("RUNTIME_CONFIG")
    path = os.getenv("RUNTIME_CONFIG_PATH")

    try:
        if inline:
            return json.loads(inline)
        if path:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to load runtime config: {e}")
    return {}


def detect_environment(runtime: Dict[str, Any]) -> Environment:
    """Production when NODE_ENV/ENV says so or the runtime config pins it."""
    if os.getenv("NODE_ENV", "").lower() == "production":
        return Environment.PROD
    if os.getenv("ENV", "").lower() in ("prod", "production"):
        return Environment.PROD
    current = (runtime.get("environment") or {}).get("current")
    if current == Environment.PROD.value:
        return Environment.PROD
    return Environment.TEST


def load_quota_enforcement() -> Dict[str, bool]:
    return {
        provider: _flag(f"QUOTA_ENFORCE_{provider.upper()}", default)
        for provider, default in QUOTA_ENFORCE_DEFAULTS.items()
    }


@dataclass
class Config:
    """Application configuration."""

    env: Environment = Environment.TEST
    runtime: Dict[str, Any] = field(default_factory=dict)

    # Google Cloud
    google_cloud_project: str = ""
    vertex_location: str = "us-central1"

    # Shared quota counter (empty means in-process counting)
    redis_url: str = ""
    quota_enforcement: Dict[str, bool] = field(default_factory=lambda: dict(QUOTA_ENFORCE_DEFAULTS))
    gemini_daily_limit: int = 15

    # HTTP
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PROD

    def lookup(self, path: str, key: Optional[str] = None) -> Any:
        """Walk a dotted path ("google.vision") through the runtime config."""
        node: Any = self.runtime
        parts = path.split(".") + ([key] if key else [])
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def resolve(self, section: str, key: str, env_var: Optional[str] = None) -> Optional[str]:
        """
        Resolve a setting by precedence:

        1. the named environment variable
        2. runtime[section][<env>][key]
        3. runtime[section][key]
        """
        if env_var:
            value = os.getenv(env_var)
            if value:
                return value

        scoped = self.lookup(f"{section}.{self.env.value}", key)
        if scoped:
            return scoped

        value = self.lookup(section, key)
        return value or None

    def quota_enforced_for(self, provider: str) -> bool:
        return self.quota_enforcement.get(provider, True)

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        runtime = load_runtime_config()
        env = detect_environment(runtime)

        cors = os.getenv("CORS_ORIGINS", "*")

        return cls(
            env=env,
            runtime=runtime,
            google_cloud_project=os.getenv("GOOGLE_CLOUD_PROJECT", os.getenv("GCLOUD_PROJECT", "")),
            vertex_location=os.getenv("VERTEX_LOCATION", "us-central1"),
            redis_url=os.getenv("REDIS_URL", ""),
            quota_enforcement=load_quota_enforcement(),
            gemini_daily_limit=int(os.getenv("GEMINI_DAILY_LIMIT", "15")),
            cors_origins=[o.strip() for o in cors.split(",") if o.strip()],
        )


# Global config instance
config = Config.from_env()
