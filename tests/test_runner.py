from __future__ import annotations

import argparse
import os
import signal
import subprocess
import sys
from pathlib import Path

import pytest

import md_probes
import md_runner
from conftest import ledger_lines, write_ledger
from md_probes import FsCapacity
from md_utils import LedgerStore

RUNNER = Path(__file__).resolve().parents[1] / "md_runner.py"


@pytest.fixture(autouse=True)
def runner_env(monkeypatch, tmp_path, machine):
    for name in ("MD_PATH", "MD_QUOTA", "MD_LOCK_TIMEOUT", "MD_POLL_INTERVAL", "MD_ACCOUNT", "SLURM_JOB_ID"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MD_KILL_GROUP", "0")
    monkeypatch.setenv("SLURM_JOB_ID", "1001")
    monkeypatch.chdir(tmp_path)

    monkeypatch.setattr(md_probes, "capacity_probe", machine.capacity_probe)
    monkeypatch.setattr(md_probes, "usage_probe", machine.usage_probe)
    monkeypatch.setattr(md_probes, "disk_identity", lambda path, suffix_len=6: "NODE1")
    monkeypatch.setattr(md_probes, "active_jobs", lambda node, account=None, user=None: machine.job_lister(node))
    monkeypatch.setattr(md_runner, "install_handlers", lambda session: None)


def run_cli(md_path, *argv: str) -> int:
    return md_runner.main(["--md-path", str(md_path), *argv])


def test_missing_md_path_exits(tmp_path) -> None:
    with pytest.raises(SystemExit) as info:
        md_runner.main(["status"])
    assert "MD_PATH" in str(info.value)


def test_md_path_from_environment(monkeypatch, md_path, capsys) -> None:
    monkeypatch.setenv("MD_PATH", str(md_path))
    assert md_runner.main(["status"]) == 0
    assert "is empty" in capsys.readouterr().out


def test_status_lists_entries(md_path, store: LedgerStore, capsys) -> None:
    write_ledger(store, "NODE1 100 10", "HOME 500 0.5", "torn")

    assert run_cli(md_path, "status") == 0

    out = capsys.readouterr().out
    assert "NODE1" in out and "90G" in out
    assert "499.5G" in out
    assert "malformed: 'torn'" in out


def test_prune_command(md_path, store: LedgerStore) -> None:
    write_ledger(store, "NODE3 100 5", "NODE3 100 0", "HOME 500 1")
    assert run_cli(md_path, "prune") == 0
    assert ledger_lines(store) == ["NODE3 100 5", "HOME 500 1"]


def test_run_reserves_executes_and_releases(md_path, store: LedgerStore) -> None:
    write_ledger(store, "NODE1 100 30")

    code = run_cli(md_path, "run", "--quota", "10G", "--interval", "0.05", "-c", "true", "--", "sh", "-c", "exit 0")

    assert code == 0
    assert ledger_lines(store) == ["NODE1 100 30"]


def test_run_reports_command_exit_status(md_path, store: LedgerStore) -> None:
    code = run_cli(md_path, "run", "--quota", "1G", "--interval", "0.05", "--", "sh", "-c", "exit 7")
    assert code == 7
    assert ledger_lines(store) == ["NODE1 100 0"]


def test_run_without_headroom_runs_failure_command(md_path, store: LedgerStore, tmp_path) -> None:
    write_ledger(store, "NODE1 100 95")
    marker = tmp_path / "resubmitted"

    code = run_cli(md_path, "run", "--quota", "10G", "--on-failure", f"touch {marker}", "--", "true")

    assert code == 1
    assert marker.exists()
    assert ledger_lines(store) == ["NODE1 100 95"]


def test_run_over_quota_releases(md_path, store: LedgerStore, machine) -> None:
    machine.usage = 12.0

    code = run_cli(md_path, "run", "--quota", "10G", "--interval", "0.05", "--", "sleep", "30")

    assert code == 1
    assert ledger_lines(store) == ["NODE1 100 0"]


def test_quota_from_environment(monkeypatch, md_path, store: LedgerStore, capsys) -> None:
    monkeypatch.setenv("MD_QUOTA", "2T")
    machine_capacity = FsCapacity(5000.0, 5000.0, "/scratch/local")
    monkeypatch.setattr(md_probes, "capacity_probe", lambda path: machine_capacity)

    assert run_cli(md_path, "start") == 0

    assert capsys.readouterr().out.strip() == "2000"
    assert ledger_lines(store) == ["NODE1 5000 2000"]


def test_split_start_exec_end(md_path, store: LedgerStore, capsys) -> None:
    assert run_cli(md_path, "start", "--quota", "10G") == 0
    assert capsys.readouterr().out.strip() == "10"
    assert ledger_lines(store) == ["NODE1 100 10"]

    assert run_cli(md_path, "exec", "--quota", "10G", "--interval", "0.05", "--", "true") == 0
    assert ledger_lines(store) == ["NODE1 100 10"]

    assert run_cli(md_path, "end", "--quota", "10G") == 0
    assert ledger_lines(store) == ["NODE1 100 0"]


def test_kill_command_releases(md_path, store: LedgerStore) -> None:
    write_ledger(store, "NODE1 100 25")
    assert run_cli(md_path, "kill", "--quota", "10G") == 1
    assert ledger_lines(store) == ["NODE1 100 15"]


def test_bad_unit_is_reported(md_path, store: LedgerStore) -> None:
    assert run_cli(md_path, "start", "--quota", "10Q") == 1
    assert not store.exists()


def test_bad_environment_number_exits(monkeypatch, md_path) -> None:
    monkeypatch.setenv("MD_LOCK_TIMEOUT", "soon")
    with pytest.raises(SystemExit):
        run_cli(md_path, "status")


def test_command_list_orders_strings_before_argv() -> None:
    args = argparse.Namespace(command=["echo one", "echo two"], argv=["echo", "three"])
    assert md_runner.command_list(args) == ["echo one", "echo two", ["echo", "three"]]
    assert md_runner.command_list(argparse.Namespace(command=None, argv=[])) == []


def test_interval_defaults_to_environment(monkeypatch) -> None:
    monkeypatch.setenv("MD_POLL_INTERVAL", "7")
    args = md_runner.parse_args(["exec", "--", "true"])
    md_runner.load_settings(args)
    assert args.interval == 7.0
    assert args.argv == ["true"]


def test_fatal_error_is_reported_before_group_kill(tmp_path) -> None:
    env = dict(os.environ, MD_PATH=str(tmp_path / "mdquota"), MD_KILL_GROUP="1", LOG_LEVEL="INFO")
    proc = subprocess.run(
        [sys.executable, str(RUNNER), "run", "--quota", "10Q", "--", "true"],
        env=env,
        cwd=str(tmp_path),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        encoding="utf-8",
        timeout=60,
        start_new_session=True,
    )

    assert proc.returncode == -signal.SIGTERM
    assert "Bad unit 'Q'" in proc.stderr
    assert proc.stderr.index("Bad unit") < proc.stderr.index("Terminating process group")


def test_run_reports_lock_timeout_with_identity(md_path, store: LedgerStore, capsys) -> None:
    with LedgerStore(md_path).exclusive():
        code = run_cli(md_path, "--lock-timeout", "0.2", "run", "--quota", "10G", "--", "true")

    assert code == 1
    assert "[NODE1] Could not lock" in capsys.readouterr().err
    assert ledger_lines(store) == []


def test_dotenv_is_loaded_once(monkeypatch, md_path) -> None:
    calls = []
    monkeypatch.setattr(md_runner, "load_dotenv", lambda *a, **kw: calls.append(a))

    assert run_cli(md_path, "status") == 0
    assert len(calls) == 1
