from __future__ import annotations

import os
import re
import subprocess
import time

import pytest

import supervisor
from conftest import make_job, seed
from config import load_config
from errors import AlreadySucceeded, JobNotFound, ProcessError, StillRunning, StoreIOError
from storage import JobStore
from supervisor import (
    MODE_ONCE,
    MODE_RESTART,
    MODE_RETRY,
    RESTART_DELAY,
    AttemptLoop,
    ProcessSupervisor,
    select_retry_target,
    user_shell,
)


@pytest.fixture()
def sup(store, tmp_path):
    return ProcessSupervisor(store, tmp_path / "logs", shell="/bin/sh", entry_point=["bj-test"])


def test_user_shell_falls_back_to_posix_sh():
    assert user_shell({"SHELL": "/usr/bin/fish"}) == "/usr/bin/fish"
    assert user_shell({"SHELL": ""}) == "/bin/sh"
    assert user_shell({}) == "/bin/sh"


# ---------------- Spawning ----------------
def test_spawn_registers_job_and_detaches(sup, store, fake_popen, tmp_path):
    job_id = sup.spawn("echo 'hi there' && ls", tmp_path)

    assert job_id == 1
    argv, kwargs = fake_popen[0]
    assert kwargs["start_new_session"] is True
    assert kwargs["cwd"] == str(tmp_path)
    assert kwargs["stderr"] is subprocess.STDOUT
    assert kwargs["stdin"] is subprocess.DEVNULL
    # the command travels as a single argv element, never through generated shell source
    assert argv == [
        "bj-test", "supervise", "1",
        "--mode", MODE_ONCE, "--attempts", "1", "--delay", "0",
        "--shell", "/bin/sh",
        "--", "echo 'hi there' && ls",
    ]

    job = store.get(job_id)
    assert job.pid == 40001
    assert job.working_dir == str(tmp_path)
    assert job.is_running
    assert re.search(r"/logs/\d{8}-\d{6}-1\.log$", job.log_file)
    assert (tmp_path / "logs").is_dir()
    assert open(job.log_file).read() == ""


def test_spawn_with_retry_passes_loop_settings(sup, fake_popen):
    sup.spawn_with_retry("make test", "/tmp", max_attempts=3, delay=2)
    argv, _ = fake_popen[0]
    assert argv[argv.index("--mode") + 1] == MODE_RETRY
    assert argv[argv.index("--attempts") + 1] == "3"
    assert argv[argv.index("--delay") + 1] == "2"


def test_spawn_with_restart_uses_fixed_backoff(sup, fake_popen):
    sup.spawn_with_restart("./server", "/tmp")
    argv, _ = fake_popen[0]
    assert argv[argv.index("--mode") + 1] == MODE_RESTART
    assert argv[argv.index("--attempts") + 1] == "0"
    assert argv[argv.index("--delay") + 1] == str(RESTART_DELAY)


def test_spawn_failure_leaves_incomplete_record(sup, store, monkeypatch):
    def _broken(*args, **kwargs):
        raise OSError("no such executable")

    monkeypatch.setattr(supervisor.subprocess, "Popen", _broken)

    with pytest.raises(ProcessError) as exc:
        sup.spawn("echo hi", "/tmp")
    assert exc.value.job_id == 1

    job = store.get(1)
    assert job.is_running
    assert job.pid == 0
    assert job.log_file


def test_unusable_log_dir_raises_io_error(store, tmp_path, fake_popen):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    sup = ProcessSupervisor(store, blocker / "logs", shell="/bin/sh", entry_point=["bj-test"])

    with pytest.raises(StoreIOError):
        sup.spawn("echo hi", "/tmp")
    assert fake_popen == []
    assert store.get(1).pid == 0


def test_complete_delegates_to_store(sup, store):
    job_id = store.add("x", "/tmp")
    sup.complete(job_id, 7)
    assert store.get(job_id).exit_code == 7


# ---------------- Retry target selection ----------------
def test_retry_target_defaults_to_latest_failure(store):
    seed(store, [
        make_job(1, age=50, exit_code=1),
        make_job(2, age=40, exit_code=4),
        make_job(3, age=30, exit_code=0),
        make_job(4, age=20),
    ])
    assert select_retry_target(store).id == 2


def test_retry_target_none_when_nothing_failed(store):
    seed(store, [make_job(1, exit_code=0), make_job(2)])
    assert select_retry_target(store) is None


def test_retry_target_by_id_is_validated(store):
    seed(store, [make_job(1, exit_code=0), make_job(2), make_job(3, exit_code=-15)])

    with pytest.raises(AlreadySucceeded):
        select_retry_target(store, 1)
    with pytest.raises(StillRunning):
        select_retry_target(store, 2)
    with pytest.raises(JobNotFound):
        select_retry_target(store, 99)
    assert select_retry_target(store, 3).id == 3


def test_retry_job_creates_new_entry(sup, store, fake_popen):
    seed(store, [make_job(1, exit_code=2, command="pytest -x")])
    original = store.get(1)

    new_id = sup.retry_job(original, max_attempts=2, delay=0)

    assert new_id == 2
    assert store.get(1) == original
    retried = store.get(2)
    assert retried.command == "pytest -x"
    assert retried.working_dir == "/tmp"
    argv, kwargs = fake_popen[0]
    assert kwargs["cwd"] == "/tmp"
    assert argv[-1] == "pytest -x"


# ---------------- Attempt loop (inside the detached child) ----------------
class Recorder:
    def __init__(self):
        self.completed = []
        self.sleeps = []

    def complete(self, job_id, exit_code):
        self.completed.append((job_id, exit_code))

    def sleep(self, seconds):
        self.sleeps.append(seconds)


def _loop(cmd, rec, **kwargs):
    return AttemptLoop(5, cmd, "/bin/sh", rec.complete, sleep=rec.sleep, **kwargs)


def test_once_reports_exit_code():
    rec = Recorder()
    assert _loop("exit 3", rec).run() == 3
    assert rec.completed == [(5, 3)]
    assert rec.sleeps == []


def test_retry_gives_up_after_max_attempts(capsys):
    rec = Recorder()
    assert _loop("exit 1", rec, mode=MODE_RETRY, max_attempts=3, delay=2).run() == 1

    assert rec.completed == [(5, 1)]
    assert rec.sleeps == [2, 2]
    out = capsys.readouterr().out
    assert "attempt 1/3" in out
    assert "attempt 3/3" in out
    assert "all 3 attempts failed" in out


def test_retry_stops_at_first_success(tmp_path):
    marker = tmp_path / "marker"
    # fails on the first run, succeeds once the marker exists
    cmd = f"test -f '{marker}' || {{ touch '{marker}'; exit 9; }}"
    rec = Recorder()

    assert _loop(cmd, rec, mode=MODE_RETRY, max_attempts=5, delay=1).run() == 0
    assert rec.completed == [(5, 0)]
    assert rec.sleeps == [1]


def test_unbounded_retry_keeps_going(tmp_path):
    counter = tmp_path / "count"
    counter.write_text("")
    cmd = f"echo x >> '{counter}'; [ $(wc -l < '{counter}') -ge 4 ]"
    rec = Recorder()

    assert _loop(cmd, rec, mode=MODE_RETRY, max_attempts=0, delay=0).run() == 0
    assert rec.sleeps == [0, 0, 0]
    assert rec.completed == [(5, 0)]


def test_restart_only_reports_success(tmp_path):
    counter = tmp_path / "count"
    counter.write_text("")
    cmd = f"echo x >> '{counter}'; [ $(wc -l < '{counter}') -ge 3 ]"
    rec = Recorder()

    loop = _loop(cmd, rec, mode=MODE_RESTART, max_attempts=0, delay=RESTART_DELAY)
    assert loop.run() == 0
    assert rec.sleeps == [RESTART_DELAY, RESTART_DELAY]
    assert rec.completed == [(5, 0)]


def test_missing_shell_counts_as_failure():
    rec = Recorder()
    loop = AttemptLoop(5, "true", "/nonexistent/shell", rec.complete, sleep=rec.sleep)
    assert loop.run() == 127
    assert rec.completed == [(5, 127)]


def test_unknown_mode_rejected():
    with pytest.raises(ValueError):
        AttemptLoop(1, "true", "/bin/sh", print, mode="forever")


# ---------------- End to end ----------------
def _wait_terminal(store, job_id, timeout=15):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = store.get(job_id)
        if job.is_terminal:
            return job
        time.sleep(0.1)
    raise AssertionError(f"job {job_id} did not finish")


def test_detached_job_reports_back(bj_home, tmp_path):
    cfg = load_config()
    store = JobStore.from_config(cfg)
    sup = ProcessSupervisor(store, cfg.log_dir_path(), shell="/bin/sh")

    job_id = sup.spawn("echo hello from $(pwd -P); exit 4", tmp_path)
    job = _wait_terminal(store, job_id)

    assert job.exit_code == 4
    assert job.pid > 0
    with open(job.log_file) as f:
        assert f"hello from {os.path.realpath(tmp_path)}" in f.read()


def test_detached_job_can_be_killed(bj_home, tmp_path):
    cfg = load_config()
    store = JobStore.from_config(cfg)
    sup = ProcessSupervisor(store, cfg.log_dir_path(), shell="/bin/sh")

    job_id = sup.spawn("sleep 30", tmp_path)
    job = store.kill(job_id)
    assert job.exit_code == -15

    # the recorded outcome is not overwritten by the dying child
    time.sleep(0.5)
    assert store.get(job_id).exit_code == -15


def _process_gone(pid, timeout=5):
    """True once pid is no longer running (exited, or left as a zombie)."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            with open(f"/proc/{pid}/stat") as f:
                state = f.read().rsplit(")", 1)[1].split()[0]
        except OSError:
            return True
        if state in ("Z", "X"):
            return True
        time.sleep(0.1)
    return False


def test_kill_reaches_grandchildren(bj_home, tmp_path):
    cfg = load_config()
    store = JobStore.from_config(cfg)
    sup = ProcessSupervisor(store, cfg.log_dir_path(), shell="/bin/sh")
    marker = tmp_path / "grandchild.pid"

    job_id = sup.spawn(f"sleep 30 & echo $! > '{marker}'; wait", tmp_path)
    deadline = time.monotonic() + 10
    while not (marker.exists() and marker.read_text().strip()):
        assert time.monotonic() < deadline, "grandchild never started"
        time.sleep(0.1)
    grandchild = int(marker.read_text())

    try:
        store.kill(job_id)
        assert _process_gone(grandchild)
    finally:
        if not _process_gone(grandchild, timeout=0):
            os.kill(grandchild, 9)


def test_relative_config_dir_survives_other_working_dir(tmp_path, monkeypatch):
    home = tmp_path / "home"
    elsewhere = tmp_path / "elsewhere"
    home.mkdir()
    elsewhere.mkdir()
    monkeypatch.chdir(home)
    monkeypatch.setenv("BJ_CONFIG_DIR", "bjcfg")

    cfg = load_config()
    assert cfg.base_dir == home / "bjcfg"
    store = JobStore.from_config(cfg)
    sup = ProcessSupervisor(store, cfg.log_dir_path(), shell="/bin/sh", config_dir=cfg.base_dir)

    job_id = sup.spawn("exit 0", elsewhere)
    job = _wait_terminal(store, job_id)

    assert job.exit_code == 0
    assert os.path.isabs(job.log_file)
    assert job.log_file.startswith(str(home / "bjcfg" / "logs"))
    assert not (elsewhere / "bjcfg").exists()


def test_child_environment_pins_config_dir(sup, store, fake_popen, tmp_path):
    sup.spawn("true", tmp_path)
    _, kwargs = fake_popen[0]
    assert kwargs["env"]["BJ_CONFIG_DIR"] == str(store.path.parent)
