from __future__ import annotations

import pytest

from oli_workers.config import Config


def test_config_from_env_requires_database_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)

    with pytest.raises(RuntimeError, match="DATABASE_URL must be set"):
        Config.from_env()


def test_config_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql://app@db/oli")
    for name in (
        "OLI_CONFIDENCE_THRESHOLD",
        "OLI_PIPELINE_VERSION",
        "OLI_PROVIDER_BASE_URL",
        "OLI_RECOMPUTE_INTERVAL_HOURS",
    ):
        monkeypatch.delenv(name, raising=False)

    cfg = Config.from_env()
    assert cfg.database_url == "postgresql://app@db/oli"
    assert cfg.confidence_threshold == 0.5
    assert cfg.pipeline_version == 1
    assert cfg.provider_base_url is None
    assert cfg.recompute_interval_hours == 24


def test_config_from_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql://app@db/oli")
    monkeypatch.setenv("OLI_CONFIDENCE_THRESHOLD", "0.7")
    monkeypatch.setenv("OLI_PIPELINE_VERSION", "3")
    monkeypatch.setenv("OLI_PROVIDER_BASE_URL", "https://provider.test")
    monkeypatch.setenv("OLI_PROVIDER_TIMEOUT_SECONDS", "2.5")

    cfg = Config.from_env()
    assert cfg.confidence_threshold == 0.7
    assert cfg.pipeline_version == 3
    assert cfg.provider_base_url == "https://provider.test"
    assert cfg.provider_timeout_seconds == 2.5


@pytest.mark.parametrize("value", ["-0.1", "1.5"])
def test_config_from_env_rejects_out_of_range_threshold(
    monkeypatch: pytest.MonkeyPatch, value: str
) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql://app@db/oli")
    monkeypatch.setenv("OLI_CONFIDENCE_THRESHOLD", value)

    with pytest.raises(RuntimeError, match="OLI_CONFIDENCE_THRESHOLD"):
        Config.from_env()
