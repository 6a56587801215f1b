from __future__ import annotations

from pathlib import Path

import allure
import pytest

from granary.config import Settings, load_runner_catalog

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings & Runner Catalog"),
]


def test_from_env_reads_workspace_home_and_overrides(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("GRANARY_WORKSPACE", str(tmp_path / "ws"))
    monkeypatch.setenv("GRANARY_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("GRANARY_SESSION", "sess-1")
    monkeypatch.setenv("GRANARY_LEASE_TTL_SECONDS", "90")
    monkeypatch.setenv("GRANARY_RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.delenv("GRANARY_DB_PATH", raising=False)

    settings = Settings.from_env()

    assert settings.workspace == (tmp_path / "ws").resolve()
    assert settings.db_path == (tmp_path / "ws").resolve() / ".granary" / "granary.db"
    assert settings.global_db_path == tmp_path / "home" / "workers.db"
    assert settings.logs_dir == tmp_path / "home" / "logs"
    assert settings.session_id == "sess-1"
    assert settings.lease.ttl_seconds == 90
    assert settings.retry.max_attempts == 5
    settings.validate()


def test_explicit_db_path_wins(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GRANARY_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env().db_path == tmp_path / "env.db"
    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_from_env_rejects_non_numeric_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GRANARY_SUPERVISOR_TICK_SECONDS", "soon")

    with pytest.raises(ValueError, match="GRANARY_SUPERVISOR_TICK_SECONDS"):
        Settings.from_env()


def test_validate_rejects_out_of_range_settings() -> None:
    settings = Settings()
    settings.retry.max_attempts = 0
    with pytest.raises(ValueError, match="GRANARY_RETRY_MAX_ATTEMPTS"):
        settings.validate()

    settings = Settings()
    settings.retry.max_seconds = 1.0
    with pytest.raises(ValueError, match="GRANARY_RETRY_MAX_SECONDS"):
        settings.validate()


def test_runner_catalog_expands_env_refs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REVIEW_TOKEN", "s3cret")
    monkeypatch.delenv("UNSET_VAR", raising=False)
    catalog_path = tmp_path / "config.toml"
    catalog_path.write_text(
        """
[runners.review]
command = "review-bot"
args = ["--task", "{task.id}", "--token", "${REVIEW_TOKEN}"]
concurrency = 2
on = "task.done"
max_attempts = 4
retry_base_seconds = 0.5

[runners.review.env]
API_KEY = "${REVIEW_TOKEN}"
EXTRA = "${UNSET_VAR}"
""",
        encoding="utf-8",
    )

    runner = load_runner_catalog(catalog_path)["review"]

    assert runner.command == "review-bot"
    assert runner.args == ("--task", "{task.id}", "--token", "s3cret")
    assert runner.concurrency == 2
    assert runner.on == "task.done"
    assert runner.max_attempts == 4
    assert runner.retry_base_seconds == 0.5
    assert runner.retry_max_seconds is None
    assert runner.env == {"API_KEY": "s3cret", "EXTRA": ""}


def test_runner_catalog_missing_file_is_empty(tmp_path: Path) -> None:
    assert load_runner_catalog(tmp_path / "absent.toml") == {}


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ("[runners.bad\ncommand = 'x'", "Cannot read runner catalog"),
        ("[runners.bad]\nargs = ['a']", "requires a non-empty 'command'"),
        ("[runners.bad]\ncommand = 'x'\nconcurrency = 0", "'concurrency' must be"),
        ("[runners.bad]\ncommand = 'x'\nargs = 'a'", "'args' must be a list"),
        ("runners = 3", "'runners' must be a table"),
    ],
)
def test_runner_catalog_rejects_malformed_entries(
    tmp_path: Path,
    body: str,
    message: str,
) -> None:
    catalog_path = tmp_path / "config.toml"
    catalog_path.write_text(body, encoding="utf-8")

    with pytest.raises(ValueError, match=message):
        load_runner_catalog(catalog_path)
