# -*- coding: utf-8 -*-
"""
test_cli.py - 命令行入口测试

stdout 输出 JSON，通过 capsys 解析；退出码见 ExitCode。
"""

import json
import os
import textwrap
import time

import pytest

from assetmend.reconcile import cli
from assetmend.reconcile.audit import AuditLog
from assetmend.reconcile.checkpoint import FileCheckpointStore
from assetmend.reconcile.config import ENV_CONFIG_PATH, ENV_PG_DSN
from assetmend.reconcile.errors import ExitCode


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    monkeypatch.delenv(ENV_CONFIG_PATH, raising=False)
    monkeypatch.delenv(ENV_PG_DSN, raising=False)
    monkeypatch.setattr("assetmend.reconcile.config.DEFAULT_CONFIG_PATHS", [])
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "state"


@pytest.fixture
def config_path(tmp_path, state_path):
    store = tmp_path / "store"
    for name in ("images", "uploads", "images/_quarantine"):
        (store / name).mkdir(parents=True, exist_ok=True)
    path = tmp_path / "assetmend.yaml"
    path.write_text(
        textwrap.dedent(
            f"""
            containers:
              - {{id: 1, name: Images, handle: images, root: "{store}", prefix: images}}
              - {{id: 2, name: Uploads, handle: uploads, root: "{store}", prefix: uploads}}
              - {{id: 3, name: Quarantine, handle: quarantine, root: "{store}", prefix: images/_quarantine}}
            target:
              container: images
            quarantine:
              container: quarantine
            state:
              dir: "{state_path}"
            """
        ),
        encoding="utf-8",
    )
    return str(path)


def _run(capsys, argv):
    code = cli.main(argv)
    return code, json.loads(capsys.readouterr().out)


class TestStrategyCommand:
    def test_sibling_roots_use_direct_copy(self, capsys, config_path):
        code, result = _run(capsys, ["strategy", "--source", "uploads", "-c", config_path])

        assert code == 0
        assert result["ok"] is True
        assert result["target"] == "images"
        assert result["recommendation"]["strategy"] == "direct"
        assert result["nesting"]["is_nested"] is False
        assert set(result["available"]) == {"direct", "temp_file", "stream"}

    def test_nested_override_rejected(self, capsys, config_path):
        code, result = _run(
            capsys,
            ["strategy", "--source", "images", "--target", "quarantine", "--override", "direct", "-c", config_path],
        )

        assert code == 0
        assert result["recommendation"]["strategy"] == "temp_file"
        assert result["override"]["allowed"] is False
        assert result["override"]["force_recommended"] is True

    def test_unknown_container(self, capsys, config_path):
        code, result = _run(capsys, ["strategy", "--source", "nope", "-c", config_path])

        assert code == ExitCode.GATEWAY_ERROR
        assert result["ok"] is False

    def test_error_summary_on_stderr(self, capsys, config_path):
        code = cli.main(["strategy", "--source", "nope", "-c", config_path])

        captured = capsys.readouterr()
        result = json.loads(captured.out)
        assert code == ExitCode.GATEWAY_ERROR
        assert "ERROR: [" in captured.err
        assert result["message"] in captured.err

    def test_quiet_suppresses_stderr(self, capsys, config_path):
        cli.main(["strategy", "--source", "nope", "--quiet", "-c", config_path])

        assert "ERROR:" not in capsys.readouterr().err


class TestCheckpointsCommand:
    def test_list(self, capsys, config_path, state_path):
        FileCheckpointStore(state_path, "run-a").save("link_repair", {"status": "completed"})
        audit = AuditLog(state_path, "run-a", flush_every=1)
        audit.set_phase("link_repair")
        audit.log_change("fixed_broken_link", asset_id=1)

        code, result = _run(capsys, ["checkpoints", "list", "-c", config_path])

        assert code == 0
        assert result["count"] == 1
        assert result["checkpoints"][0]["run_id"] == "run-a"
        assert result["checkpoints"][0]["phase"] == "link_repair"
        assert result["change_logs"][0]["run_id"] == "run-a"
        assert result["change_logs"][0]["changes"] == 1

    def test_list_filtered_by_run(self, capsys, config_path, state_path):
        FileCheckpointStore(state_path, "run-a").save("link_repair", {})

        code, result = _run(capsys, ["checkpoints", "list", "--run-id", "run-b", "-c", config_path])

        assert code == 0
        assert result["count"] == 0

    def test_cleanup(self, capsys, config_path, state_path):
        store = FileCheckpointStore(state_path, "run-a")
        checkpoint_id = store.save("link_repair", {})
        old = time.time() - 3 * 3600
        os.utime(state_path / f"{checkpoint_id}.json", (old, old))

        code, result = _run(capsys, ["checkpoints", "cleanup", "--retention-hours", "1", "-c", config_path])

        assert code == 0
        assert result["deleted"] == 1
        assert store.list_checkpoints() == []


class TestRecordStoreCommands:
    @pytest.mark.parametrize(
        "argv",
        [
            ["analyze"],
            ["run", "--phase", "link_repair"],
            ["rollback", "run-a", "--dry-run"],
        ],
    )
    def test_require_postgres(self, capsys, config_path, argv):
        code, result = _run(capsys, argv + ["-c", config_path])

        assert code == ExitCode.CONFIG_ERROR
        assert result["code"] == "CONFIG_ERROR"

    def test_missing_config_file(self, capsys, tmp_path):
        code, result = _run(capsys, ["analyze", "-c", str(tmp_path / "missing.yaml")])

        assert code == ExitCode.CONFIG_ERROR
        assert result["code"] == "CONFIG_NOT_FOUND"


class TestParser:
    def test_no_command_prints_help(self, capsys):
        assert cli.main([]) == 1
        assert "assetmend" in capsys.readouterr().out

    def test_rejects_unknown_phase(self):
        with pytest.raises(SystemExit):
            cli.main(["run", "--phase", "teleport"])
