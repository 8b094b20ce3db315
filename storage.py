# storage.py
import fcntl
import json
import os
import signal
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path

from errors import AlreadyTerminal, JobNotFound, NoPID, ProcessError, StoreIOError
from models import EXIT_KILLED, EXIT_ORPHANED, GRACE_PERIOD, Job, utcnow

# Terminal jobs kept after a completion; older ones are dropped
MAX_JOB_HISTORY = 100


class JobStore:
    """
    Job ledger shared by every bj process.

    The table lives in one JSON file. Every operation, reads included, takes an
    exclusive flock on a separate lock file, loads the whole table, works on it
    and (when mutating) rewrites the whole table before the lock is released.
    """

    def __init__(self, ledger_path, lock_path=None, create=True):
        self.path = Path(ledger_path)
        self.lock_path = Path(lock_path) if lock_path else self.path.with_suffix(".lock")
        self.create = create
        if not create:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreIOError(f"failed to create ledger directory: {e}") from e

    @classmethod
    def from_config(cls, cfg, create=True):
        return cls(cfg.ledger_path, cfg.lock_path, create=create)

    # ---------------- Locking & persistence ----------------
    @contextmanager
    def _locked(self):
        if not self.create and not self.lock_path.parent.is_dir():
            # nothing has been recorded yet; a read-only store has nothing to lock
            yield
            return
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_RDWR, 0o644)
        except OSError as e:
            raise StoreIOError(f"failed to open lock file: {e}") from e
        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX)
            except OSError as e:
                raise StoreIOError(f"failed to acquire lock: {e}") from e
            yield
        finally:
            # closing the descriptor drops the flock as well
            os.close(fd)

    def _load(self):
        try:
            data = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StoreIOError(f"failed to load jobs: {e}") from e

        if not data.strip():
            return []
        try:
            return [Job.from_dict(item) for item in json.loads(data)]
        except (ValueError, KeyError, TypeError) as e:
            raise StoreIOError(f"failed to load jobs: corrupt ledger {self.path}: {e}") from e

    def _save(self, jobs):
        payload = json.dumps([j.to_dict() for j in jobs], indent=2)
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            raise StoreIOError(f"failed to save jobs: {e}") from e

    @staticmethod
    def _find(jobs, job_id):
        for job in jobs:
            if job.id == job_id:
                return job
        return None

    def _update(self, job_id, fn):
        with self._locked():
            jobs = self._load()
            job = self._find(jobs, job_id)
            if job is None:
                raise JobNotFound(job_id)
            fn(job)
            self._save(jobs)
            return job

    # ---------------- Creation & updates ----------------
    def add(self, command, working_dir, log_path=""):
        """Append a running job and return its id (max id + 1, or 1 on an empty table)."""
        with self._locked():
            jobs = self._load()
            job_id = max((j.id for j in jobs), default=0) + 1
            jobs.append(Job(id=job_id, command=command, working_dir=str(working_dir), log_file=str(log_path)))
            self._save(jobs)
            return job_id

    def update_log_path(self, job_id, log_path):
        def apply(job):
            job.log_file = str(log_path)
        self._update(job_id, apply)

    def update_pid(self, job_id, pid):
        def apply(job):
            job.pid = pid
        self._update(job_id, apply)

    def complete(self, job_id, exit_code):
        """Record a job's exit code and end time, then enforce the retention ceiling."""
        with self._locked():
            jobs = self._load()
            job = self._find(jobs, job_id)
            if job is None:
                raise JobNotFound(job_id)
            job.mark_terminal(exit_code)
            self._save(self._enforce_history_limit(jobs))
            return job

    @staticmethod
    def _enforce_history_limit(jobs):
        terminal = [j for j in jobs if j.is_terminal]
        if len(terminal) <= MAX_JOB_HISTORY:
            return jobs
        terminal.sort(key=lambda j: j.start_time, reverse=True)
        dropped = {j.id for j in terminal[MAX_JOB_HISTORY:]}
        return [j for j in jobs if j.id not in dropped]

    # ---------------- Queries ----------------
    def get(self, job_id):
        with self._locked():
            return self._find(self._load(), job_id)

    def list(self):
        """All jobs, newest start time first."""
        with self._locked():
            jobs = self._load()
        jobs.sort(key=lambda j: j.start_time, reverse=True)
        return jobs

    def latest(self):
        jobs = self.list()
        return jobs[0] if jobs else None

    def latest_running(self):
        for job in self.list():
            if job.is_running:
                return job
        return None

    def latest_failed(self):
        for job in self.list():
            if job.exit_code is not None and job.exit_code != 0:
                return job
        return None

    # ---------------- Kill ----------------
    def kill(self, job_id):
        """
        SIGTERM the job's whole process group and mark it terminal with -15.

        The child is spawned as a session leader, so its pid is also its process
        group id. Success means the signal was delivered; the process is not
        waited on.
        """
        with self._locked():
            jobs = self._load()
            job = self._find(jobs, job_id)
            if job is None:
                raise JobNotFound(job_id)
            if job.is_terminal:
                raise AlreadyTerminal(job_id)
            if job.pid == 0:
                raise NoPID(job_id)

            try:
                os.kill(-job.pid, signal.SIGTERM)
            except OSError as e:
                raise ProcessError(f"failed to terminate job {job_id} (pid {job.pid}): {e}", job_id) from e

            job.mark_terminal(EXIT_KILLED)
            self._save(jobs)
            return job

    # ---------------- Retention ----------------
    def prune(self):
        """Drop every successful job and its log file. Returns the number removed."""
        return self._prune(lambda job: job.exit_code == 0)

    def prune_older_than(self, age: timedelta):
        """Like prune(), restricted to jobs that ended before now - age."""
        cutoff = utcnow() - age
        return self._prune(lambda job: job.exit_code == 0 and job.end_time is not None and job.end_time < cutoff)

    def _prune(self, should_prune):
        with self._locked():
            jobs = self._load()
            kept = []
            pruned = 0
            for job in jobs:
                if should_prune(job):
                    _remove_log(job.log_file)
                    pruned += 1
                else:
                    kept.append(job)
            if pruned:
                self._save(kept)
            return pruned

    # ---------------- Garbage collection ----------------
    def garbage_collect(self):
        """
        Mark running jobs whose process is gone as orphaned (exit code -1).

        Jobs inside the grace period and jobs that never got a pid are left alone.
        Any failure of the liveness probe counts as the process being gone.
        """
        with self._locked():
            jobs = self._load()
            now = utcnow()
            collected = 0
            for job in jobs:
                if job.is_terminal or job.pid == 0:
                    continue
                if now - job.start_time < GRACE_PERIOD:
                    continue
                if _pid_alive(job.pid):
                    continue
                job.mark_terminal(EXIT_ORPHANED, now)
                collected += 1
            if collected:
                self._save(jobs)
            return collected


def _pid_alive(pid):
    try:
        os.kill(pid, 0)
    except OSError:
        return False
    return True


def _remove_log(log_file):
    if not log_file:
        return
    try:
        os.remove(log_file)
    except OSError:
        # best effort, the file may already be gone
        pass
