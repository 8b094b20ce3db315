"""Shared test fixtures."""

from __future__ import annotations

import subprocess
from datetime import timedelta

import pytest

import supervisor
from models import Job, utcnow
from storage import JobStore


@pytest.fixture()
def store(tmp_path):
    return JobStore(tmp_path / "jobs.json", tmp_path / "jobs.lock")


@pytest.fixture()
def bj_home(tmp_path, monkeypatch):
    """Point the config dir (ledger, logs, bj.toml) at a temp directory."""
    home = tmp_path / "bj"
    monkeypatch.setenv("BJ_CONFIG_DIR", str(home))
    return home


class FakeProcess:
    def __init__(self, pid):
        self.pid = pid


@pytest.fixture()
def fake_popen(monkeypatch):
    """Replace Popen in the supervisor; records every call instead of starting anything."""
    calls = []

    def _popen(argv, **kwargs):
        calls.append((argv, kwargs))
        return FakeProcess(40000 + len(calls))

    monkeypatch.setattr(supervisor.subprocess, "Popen", _popen)
    return calls


def reaped_pid():
    """A pid that belonged to a process which has exited and been reaped."""
    proc = subprocess.Popen(["true"])
    proc.wait()
    return proc.pid


def make_job(job_id, *, age=0, exit_code=None, pid=0, ended_ago=None, log_file="", command=None):
    now = utcnow()
    job = Job(
        id=job_id,
        command=command or f"echo {job_id}",
        working_dir="/tmp",
        start_time=now - timedelta(seconds=age),
        log_file=log_file,
        pid=pid,
    )
    if exit_code is not None:
        end = now - timedelta(seconds=ended_ago if ended_ago is not None else 0)
        job.mark_terminal(exit_code, end)
    return job


def seed(store, jobs):
    with store._locked():
        store._save(jobs)
