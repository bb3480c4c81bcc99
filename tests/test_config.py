import pytest
from pydantic import ValidationError

from pushdeploy.core.config import Settings
from pushdeploy.deploy.executor import SSHExecutor
from pushdeploy.main import build_components


def test_defaults(monkeypatch):
    for name in (
        "PUSHDEPLOY_MAX_RETRIES",
        "PUSHDEPLOY_WEBHOOK_SECRET",
        "PUSHDEPLOY_STAGE_IGNORE",
        "PUSHDEPLOY_STRICT_HOST_KEYS",
    ):
        monkeypatch.delenv(name, raising=False)
    settings = Settings()
    assert settings.max_retries == 3
    assert settings.webhook_secret is None
    assert ".git" in settings.stage_ignore_list
    assert settings.strict_host_keys is False


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("PUSHDEPLOY_MAX_RETRIES", "5")
    monkeypatch.setenv("PUSHDEPLOY_STAGE_IGNORE", "dist, *.log ,")
    monkeypatch.setenv("PUSHDEPLOY_WEBHOOK_SECRET", "s3")
    settings = Settings()
    assert settings.max_retries == 5
    assert settings.stage_ignore_list == ["dist", "*.log"]
    assert settings.webhook_secret == "s3"


def test_invalid_values():
    with pytest.raises(ValidationError):
        Settings(log_format="xml")
    with pytest.raises(ValidationError):
        Settings(max_retries=-1)


def test_strict_host_keys_reaches_executor(monkeypatch, tmp_path):
    monkeypatch.setenv("PUSHDEPLOY_STRICT_HOST_KEYS", "true")
    settings = Settings(
        inventory_path=str(tmp_path / "absent.yaml"),
        state_dir=str(tmp_path / "state"),
        staging_dir=str(tmp_path / "staging"),
    )
    assert settings.strict_host_keys is True

    components = build_components(settings)

    executor = components.orchestrator.executor
    assert isinstance(executor, SSHExecutor)
    assert executor.strict_host_keys is True
    assert components.registry.runs is components.store
