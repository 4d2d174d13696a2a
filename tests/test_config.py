"""Unit tests for ppuk.engine.config — PlatformConfig and ppuk.yaml loading."""

import pytest

from ppuk.engine.config import (
    AuditConfig,
    JobsConfig,
    PlatformConfig,
    ProviderConfig,
    get_platform_config,
    load_platform_config,
)
from ppuk.engine.errors import PPUKConfigError


class TestPlatformConfig:
    """Test PlatformConfig Pydantic model."""

    def test_defaults(self):
        cfg = PlatformConfig()
        assert cfg.name == "PPUK Core"
        assert cfg.environment == "dev"
        assert cfg.audit.retention_days == 2555
        assert cfg.audit.replay_max_attempts == 5
        assert cfg.jobs.max_attempts == 3
        assert cfg.jobs.stale_after_seconds == 900
        assert cfg.jobs.completed_retention_days == 30
        assert cfg.cache.default_ttl == 3600
        assert cfg.cache.grace_multiplier == 7
        assert cfg.documents.max_upload_size_mb == 50
        assert cfg.providers == {}

    def test_valid_environments(self):
        for env in ("dev", "staging", "prod"):
            assert PlatformConfig(environment=env).environment == env

    def test_invalid_environment(self):
        with pytest.raises(ValueError, match="dev/staging/prod"):
            PlatformConfig(environment="test")

    def test_audit_retention_must_be_positive(self):
        with pytest.raises(ValueError, match="retention_days"):
            AuditConfig(retention_days=0)

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValueError, match="max_attempts"):
            JobsConfig(max_attempts=0)

    def test_provider_defaults(self):
        provider = ProviderConfig(base_url="https://epc.example")
        assert provider.timeout == 10.0
        assert provider.ttl_seconds is None
        assert provider.retries == 0
        assert provider.api_key_header == "Authorization"


class TestLoadPlatformConfig:

    def test_missing_file_yields_defaults(self, tmp_path):
        cfg = load_platform_config(str(tmp_path / "absent.yaml"))
        assert cfg == PlatformConfig()

    def test_loads_and_flattens_platform_key(self, tmp_path):
        path = tmp_path / "ppuk.yaml"
        path.write_text(
            "platform:\n"
            "  name: Test Core\n"
            "  environment: staging\n"
            "audit:\n"
            "  retention_days: 30\n"
            "  extra_denylist: [national_insurance]\n"
            "providers:\n"
            "  epc:\n"
            "    base_url: https://epc.example\n"
            "    ttl_seconds: 86400\n"
            "schedules:\n"
            "  sweep_audit: ''\n",
            encoding="utf-8",
        )
        cfg = load_platform_config(str(path))
        assert cfg.name == "Test Core"
        assert cfg.environment == "staging"
        assert cfg.audit.retention_days == 30
        assert cfg.audit.extra_denylist == ["national_insurance"]
        assert cfg.providers["epc"].ttl_seconds == 86400
        assert cfg.schedules.sweep_audit == ""

    def test_invalid_file_raises_config_error(self, tmp_path):
        path = tmp_path / "ppuk.yaml"
        path.write_text("environment: nowhere\njobs:\n  max_attempts: 0\n", encoding="utf-8")
        with pytest.raises(PPUKConfigError) as exc:
            load_platform_config(str(path))
        assert exc.value.context["config_path"] == str(path)
        assert len(exc.value.context["errors"]) == 2

    def test_empty_file_yields_defaults(self, tmp_path):
        path = tmp_path / "ppuk.yaml"
        path.write_text("", encoding="utf-8")
        assert load_platform_config(str(path)).jobs.max_attempts == 3

    def test_get_platform_config_is_cached(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        first = get_platform_config()
        assert get_platform_config() is first
