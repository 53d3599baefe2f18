"""CLI contract tests: output and exit codes, offline only."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from lettafleet.cli import main


FLEET = """
agents:
  - name: bot
    embedding: openai/text-embedding-3-small
    system_prompt: You are a bot.
    memory_blocks:
      - name: persona
        description: who
        limit: 100
        value: I am a bot.
"""


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.delenv("LETTA_BASE_URL", raising=False)
    monkeypatch.delenv("LETTA_API_KEY", raising=False)


def _fleet(tmp_path: Path, text: str = FLEET) -> str:
    path = tmp_path / "fleet.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_validate(capsys, tmp_path):
    rc = main(["validate", "-f", _fleet(tmp_path)])
    out = capsys.readouterr().out
    assert rc == 0
    assert "valid (1 agents, 0 shared blocks, 0 shared folders, 0 mcp servers)" in out


def test_validate_reports_config_errors(capsys, tmp_path):
    rc = main(["validate", "-f", _fleet(tmp_path, "agents:\n  - name: all\n")])
    out = capsys.readouterr().out
    assert rc == 2
    assert out.startswith("error: Invalid config in")
    assert "reserved" in out


def test_validate_requires_embedding_on_self_hosted(capsys, tmp_path):
    rc = main(["validate", "-f", _fleet(tmp_path, "agents:\n  - name: bot\n")])
    assert rc == 2
    assert "missing for: bot" in capsys.readouterr().out


def test_apply_dry_run(capsys, tmp_path):
    rc = main(["--offline", "apply", "-f", _fleet(tmp_path), "--dry-run"])
    out = capsys.readouterr().out
    assert rc == 0
    assert "[+] bot (CREATE)" in out
    assert "    Blocks: persona" in out
    assert "Total changes: 1" in out


def test_apply(capsys, tmp_path):
    rc = main(["--offline", "apply", "-f", _fleet(tmp_path)])
    out = capsys.readouterr().out
    assert rc == 0
    assert "Apply completed: 1 applied, 0 unchanged" in out
    assert "  Created: bot" in out


def test_apply_json(capsys, tmp_path):
    rc = main(["--offline", "apply", "-f", _fleet(tmp_path), "--json"])
    data = json.loads(capsys.readouterr().out)
    assert rc == 0
    assert data["created"] == ["bot"]
    assert data["failed"] == []
    assert set(data["agents"]) == {"bot"}


def test_apply_agent_failure_exits_1(capsys, tmp_path):
    text = FLEET + "  - name: broken\n    embedding: openai/text-embedding-3-small\n    tools: [mystery]\n"
    rc = main(["--offline", "apply", "-f", _fleet(tmp_path, text)])
    out = capsys.readouterr().out
    assert rc == 1
    assert "Succeeded: 1/2" in out
    assert "broken: Agent 'broken' references tool 'mystery'" in out
    assert out.rstrip().endswith("error: 1 agent(s) failed to apply")


def test_apply_flag_precondition_exits_2(capsys, tmp_path):
    rc = main(["--offline", "apply", "-f", _fleet(tmp_path), "--promote"])
    assert rc == 2
    assert "error: --promote requires --canary flag" in capsys.readouterr().out


def test_apply_yaml_error_exits_2(capsys, tmp_path):
    rc = main(["--offline", "apply", "-f", _fleet(tmp_path, "agents: [\n")])
    assert rc == 2
    assert "Invalid YAML" in capsys.readouterr().out


def test_cleanup_nothing_to_do(capsys):
    rc = main(["--offline", "cleanup", "all"])
    out = capsys.readouterr().out
    assert rc == 0
    assert "No orphaned blocks to delete" in out
    assert "No orphaned archives to delete" in out


def test_requires_subcommand():
    with pytest.raises(SystemExit) as exc:
        main([])
    assert exc.value.code == 2


def test_verbose_and_quiet_are_exclusive():
    with pytest.raises(SystemExit):
        main(["-v", "-q", "cleanup", "blocks"])
