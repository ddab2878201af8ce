from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

import gacha.cli
from gacha.config import load_settings
from gacha.history.store import ChatHistoryStore


def _combined_output(result) -> str:
    try:
        return result.stdout + result.stderr
    except Exception:
        return result.stdout


def test_run_requires_project_config(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    result = runner.invoke(gacha.cli.app, ["run", "a cat"])

    assert result.exit_code == 2
    assert "gacha init" in _combined_output(result)


def test_help_and_init_work_without_config(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    assert runner.invoke(gacha.cli.app, ["--help"]).exit_code == 0
    first = runner.invoke(gacha.cli.app, ["init"])
    assert first.exit_code == 0
    assert (tmp_path / ".gacha_config" / "config.toml").is_file()

    second = runner.invoke(gacha.cli.app, ["init"])
    assert second.exit_code == 2
    assert runner.invoke(gacha.cli.app, ["init", "--force"]).exit_code == 0


def test_run_dry_batch_succeeds_and_records_history(isolated_env):
    runner = CliRunner()

    result = runner.invoke(
        gacha.cli.app,
        ["run", "a cat", "a dog", "--delay", "0", "--step-ms", "0", "--quantity", "2", "--ratio", "3:2"],
    )

    assert result.exit_code == 0, _combined_output(result)
    output = result.stdout
    assert "Task #1 done" in output
    assert "Task #2 done" in output
    assert "phase=IDLE tasks=2" in output
    assert "dryrun://" in output

    store = ChatHistoryStore(load_settings().history_db)
    sessions = store.list_sessions()
    store.close()
    assert len(sessions) == 1
    assert sessions[0].messages[-1].content == "Batch finished: total 2, succeeded 2, failed 0"


def test_run_with_failed_task_exits_non_zero(isolated_env, tmp_path: Path):
    prompt_file = tmp_path / "prompts.txt"
    prompt_file.write_text("a cat\n\n[fail] a dog\n", encoding="utf-8")
    runner = CliRunner()

    result = runner.invoke(
        gacha.cli.app,
        ["run", "--file", str(prompt_file), "--delay", "0", "--step-ms", "0", "--no-history"],
    )

    assert result.exit_code == 1
    assert "Task #2 failed: Simulated failure" in result.stdout
    assert not load_settings().history_db.exists()


def test_run_validates_input(isolated_env):
    runner = CliRunner()

    assert runner.invoke(gacha.cli.app, ["run"]).exit_code == 2
    assert runner.invoke(gacha.cli.app, ["run", "a cat", "--ratio", "16:9"]).exit_code == 2
    bad_agent = runner.invoke(gacha.cli.app, ["run", "a cat", "--agent", "nowhere"])
    assert bad_agent.exit_code == 2


def test_settings_commands_persist(isolated_env):
    runner = CliRunner()

    assert runner.invoke(gacha.cli.app, ["settings", "delay", "5"]).exit_code == 0
    assert runner.invoke(gacha.cli.app, ["settings", "placement", "embedded"]).exit_code == 0
    assert runner.invoke(gacha.cli.app, ["settings", "placement", "sidebar"]).exit_code == 2

    shown = runner.invoke(gacha.cli.app, ["settings", "show"])
    assert shown.exit_code == 0
    assert "delay_seconds=5" in shown.stdout
    assert "ui_placement=embedded" in shown.stdout
    assert "link.max_reconnect_attempts=3" in shown.stdout


def test_history_commands(isolated_env):
    store = ChatHistoryStore(load_settings().history_db)
    session_id = store.create_session()
    store.close()
    runner = CliRunner()

    listed = runner.invoke(gacha.cli.app, ["history", "list"])
    assert listed.exit_code == 0
    assert session_id in listed.stdout

    shown = runner.invoke(gacha.cli.app, ["history", "show", session_id])
    assert shown.exit_code == 0
    assert "session={0}".format(session_id) in shown.stdout

    assert runner.invoke(gacha.cli.app, ["history", "delete", session_id]).exit_code == 0
    assert runner.invoke(gacha.cli.app, ["history", "show", session_id]).exit_code == 2
    assert runner.invoke(gacha.cli.app, ["history", "delete", session_id]).exit_code == 2


def test_doctor_outputs_json(isolated_env):
    runner = CliRunner()
    result = runner.invoke(gacha.cli.app, ["doctor"])

    assert result.exit_code == 0
    parsed = json.loads(result.stdout)
    assert parsed["queue"]["delay_seconds"] == 2
    assert parsed["link"]["cooldown_ms"] == 60000
    assert parsed["logs"]["enabled"] is True
    assert parsed["history"]["sessions"] == 0
