from pathlib import Path

import allure
import pytest

from homr.config import DEFAULT_COMPLETION_COMMAND_TEMPLATE, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_settings_defaults_without_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("HOMR_DB_PATH", "HOMR_MAX_DISCOVERIES", "HOMR_COMPLETION_COMMAND_TEMPLATE"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".homr.db")
    assert settings.homr.max_discoveries == 50
    assert settings.homr.output_max_chars == 50_000
    assert settings.failure_patterns.lookback == 5
    assert settings.failure_patterns.consecutive_failure_threshold == 3
    assert settings.completion.command_template == DEFAULT_COMPLETION_COMMAND_TEMPLATE
    assert settings.analysis.lookback_days == 30
    settings.validate()


def test_settings_read_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HOMR_DB_PATH", "/tmp/homr-test.db")
    monkeypatch.setenv("HOMR_MAX_DISCOVERIES", "12")
    monkeypatch.setenv("HOMR_FAILURE_THRESHOLD", "4")
    monkeypatch.setenv("HOMR_COMPLETION_MODEL", "opus")
    monkeypatch.setenv("HOMR_ANALYSIS_MAX_PROPOSALS", "2")

    settings = Settings.from_env()

    assert settings.db_path == Path("/tmp/homr-test.db")
    assert settings.homr.max_discoveries == 12
    assert settings.failure_patterns.consecutive_failure_threshold == 4
    assert settings.completion.model == "opus"
    assert settings.analysis.max_proposals == 2


def test_explicit_db_path_wins_over_environment(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("HOMR_DB_PATH", "/tmp/ignored.db")

    settings = Settings.from_env(db_path=tmp_path / "chosen.db")

    assert settings.db_path == tmp_path / "chosen.db"


def test_validate_rejects_non_positive_limits(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HOMR_MAX_DISCOVERIES", "0")

    with pytest.raises(ValueError, match="HOMR_MAX_DISCOVERIES"):
        Settings.from_env().validate()


def test_validate_rejects_alignment_outside_percent_range(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("HOMR_HEALTHY_ALIGNMENT", "120")

    with pytest.raises(ValueError, match="HOMR_HEALTHY_ALIGNMENT"):
        Settings.from_env().validate()


def test_validate_completion_requires_prompt_placeholder(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("HOMR_COMPLETION_COMMAND_TEMPLATE", "claude --model {model}")

    with pytest.raises(ValueError, match=r"\{prompt\}"):
        Settings.from_env().validate_completion()
