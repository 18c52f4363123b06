"""Tests for layered configuration and provider credentials"""
import json

import pytest

from app.core.config import (
    Config,
    Environment,
    detect_environment,
    load_quota_enforcement,
    load_runtime_config,
)
from app.core.credentials import CredentialResolver
from app.core.errors import FailedPreconditionError, InvalidArgumentError


RUNTIME = {
    "stripe": {
        "secret_key": "sk_shared",
        "test": {"secret_key": "sk_test_scoped"},
        "prod": {"secret_key": "sk_live_scoped"},
    },
    "google": {"vision": {"apikey": "nested-vision"}, "vision_key": "legacy-vision"},
    "client": {"domain": "https://example.com"},
}


class TestResolve:
    def test_env_var_wins(self, monkeypatch):
        monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_from_env")
        cfg = Config(runtime=RUNTIME)
        assert cfg.resolve("stripe", "secret_key", "STRIPE_SECRET_KEY") == "sk_from_env"

    def test_environment_scoped_block_before_section(self):
        assert Config(runtime=RUNTIME).resolve("stripe", "secret_key") == "sk_test_scoped"
        assert Config(env=Environment.PROD, runtime=RUNTIME).resolve("stripe", "secret_key") == "sk_live_scoped"

    def test_section_value(self):
        assert Config(runtime=RUNTIME).resolve("client", "domain") == "https://example.com"

    def test_dotted_section(self):
        assert Config(runtime=RUNTIME).resolve("google.vision", "apikey") == "nested-vision"

    def test_missing_value_is_none(self, monkeypatch):
        monkeypatch.delenv("NOPE", raising=False)
        assert Config(runtime=RUNTIME).resolve("openai", "apikey", "NOPE") is None

    def test_empty_env_var_falls_through(self, monkeypatch):
        monkeypatch.setenv("STRIPE_SECRET_KEY", "")
        cfg = Config(runtime=RUNTIME)
        assert cfg.resolve("stripe", "secret_key", "STRIPE_SECRET_KEY") == "sk_test_scoped"


class TestEnvironment:
    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        monkeypatch.delenv("NODE_ENV", raising=False)
        monkeypatch.delenv("ENV", raising=False)

    def test_defaults_to_test(self):
        assert detect_environment({}) == Environment.TEST

    def test_node_env_production(self, monkeypatch):
        monkeypatch.setenv("NODE_ENV", "production")
        assert detect_environment({}) == Environment.PROD

    def test_env_prod(self, monkeypatch):
        monkeypatch.setenv("ENV", "prod")
        assert detect_environment({}) == Environment.PROD

    def test_runtime_pin(self):
        assert detect_environment({"environment": {"current": "prod"}}) == Environment.PROD


class TestRuntimeConfig:
    def test_inline_json(self, monkeypatch):
        monkeypatch.setenv("RUNTIME_CONFIG", json.dumps({"openai": {"apikey": "k"}}))
        assert load_runtime_config() == {"openai": {"apikey": "k"}}

    def test_file(self, monkeypatch, tmp_path):
        path = tmp_path / "runtime.json"
        path.write_text(json.dumps({"client": {"domain": "https://x"}}), encoding="utf-8")
        monkeypatch.delenv("RUNTIME_CONFIG", raising=False)
        monkeypatch.setenv("RUNTIME_CONFIG_PATH", str(path))
        assert load_runtime_config() == {"client": {"domain": "https://x"}}

    def test_broken_json_is_empty(self, monkeypatch):
        monkeypatch.setenv("RUNTIME_CONFIG", "{not json")
        assert load_runtime_config() == {}


class TestQuotaFlags:
    def test_defaults(self, monkeypatch):
        for provider in ("OPENAI", "DEEPSEEK", "VISION", "MISTRAL", "GEMINI"):
            monkeypatch.delenv(f"QUOTA_ENFORCE_{provider}", raising=False)

        flags = load_quota_enforcement()

        assert flags["openai"] and flags["deepseek"] and flags["vision"] and flags["mistral"]
        assert flags["gemini"] is False

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("QUOTA_ENFORCE_GEMINI", "true")
        monkeypatch.setenv("QUOTA_ENFORCE_OPENAI", "false")

        flags = load_quota_enforcement()

        assert flags["gemini"] is True
        assert flags["openai"] is False

    def test_unknown_provider_is_enforced(self):
        assert Config().quota_enforced_for("other") is True


# =============================================================================
# CREDENTIALS
# =============================================================================

class TestCredentials:
    def test_openai_from_env(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-abc")
        assert CredentialResolver(Config()).openai() == "sk-abc"

    def test_openai_from_runtime(self):
        assert CredentialResolver(Config(runtime={"openai": {"apikey": "sk-rt"}})).openai() == "sk-rt"

    def test_project_key_is_substituted(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-proj-123")
        monkeypatch.setenv("OPENAI_ALTERNATIVE_KEY", "sk-alt")
        assert CredentialResolver(Config()).openai() == "sk-alt"

    def test_project_key_falls_back_to_standard_key(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-proj-123")
        cfg = Config(runtime={"openai": {"standardkey": "sk-standard"}})
        assert CredentialResolver(cfg).openai() == "sk-standard"

    def test_project_key_without_substitute_is_missing(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-proj-123")
        with pytest.raises(FailedPreconditionError):
            CredentialResolver(Config()).openai()

    def test_project_key_kept_when_substitution_off(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-proj-123")
        assert CredentialResolver(Config()).openai(substitute_project_keys=False) == "sk-proj-123"

    def test_deepseek_key_format(self, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_API_KEY", "not-a-key")
        with pytest.raises(InvalidArgumentError):
            CredentialResolver(Config()).deepseek()

    def test_deepseek_env_key_wins(self, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-env")
        cfg = Config(runtime={"deepseek": {"newkey": "sk-runtime"}})
        assert CredentialResolver(cfg).deepseek() == "sk-env"

    def test_vision_legacy_key(self):
        cfg = Config(runtime={"google": {"vision_key": "legacy"}})
        assert CredentialResolver(cfg).vision() == "legacy"

    def test_vision_nested_key_first(self):
        assert CredentialResolver(Config(runtime=RUNTIME)).vision() == "nested-vision"

    @pytest.mark.parametrize("provider", ["openai", "deepseek", "vision", "mistral"])
    def test_missing_keys_are_failed_precondition(self, provider):
        with pytest.raises(FailedPreconditionError):
            CredentialResolver(Config()).for_provider(provider)

    def test_unknown_provider(self):
        with pytest.raises(InvalidArgumentError):
            CredentialResolver(Config()).for_provider("anthropic")
