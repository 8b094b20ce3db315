# supervisor.py
import os
import subprocess
import sys
import time
from datetime import datetime
from pathlib import Path

from errors import AlreadySucceeded, JobNotFound, ProcessError, StillRunning, StoreIOError

FALLBACK_SHELL = "/bin/sh"
RESTART_DELAY = 5  # seconds between restarts of a long-running service

MODE_ONCE = "once"
MODE_RETRY = "retry"
MODE_RESTART = "restart"
MODES = (MODE_ONCE, MODE_RETRY, MODE_RESTART)


def user_shell(env=None):
    env = os.environ if env is None else env
    return env.get("SHELL") or FALLBACK_SHELL


def default_entry_point():
    """argv prefix that re-enters this tool's CLI from a detached child."""
    return [sys.executable, str(Path(__file__).resolve().with_name("cli.py"))]


class ProcessSupervisor:
    def __init__(self, store, log_dir, shell=None, entry_point=None, config_dir=None):
        self.store = store
        self.log_dir = Path(log_dir).absolute()
        # the child reports to this ledger whatever its working directory
        self.config_dir = Path(config_dir or store.path.parent).absolute()
        self.shell = shell or user_shell()
        self.entry_point = entry_point or default_entry_point()

    # ---------------- Spawning ----------------
    def spawn(self, command, working_dir=None):
        """Run command once in the background; returns the new job id."""
        return self._spawn(command, working_dir, MODE_ONCE)

    def spawn_with_retry(self, command, working_dir=None, max_attempts=0, delay=1):
        """Background command that is re-run on failure; max_attempts=0 retries until success."""
        return self._spawn(command, working_dir, MODE_RETRY, max_attempts=max_attempts, delay=delay)

    def spawn_with_restart(self, command, working_dir=None):
        """Background service restarted every RESTART_DELAY seconds until it exits 0."""
        return self._spawn(command, working_dir, MODE_RESTART, max_attempts=0, delay=RESTART_DELAY)

    def retry_job(self, job, max_attempts=0, delay=1):
        """Re-run a finished job's command as a brand-new job."""
        return self.spawn_with_retry(job.command, job.working_dir, max_attempts=max_attempts, delay=delay)

    def child_argv(self, job_id, command, mode, max_attempts, delay):
        return self.entry_point + [
            "supervise", str(job_id),
            "--mode", mode,
            "--attempts", str(max_attempts),
            "--delay", str(delay),
            "--shell", self.shell,
            "--", command,
        ]

    def _spawn(self, command, working_dir, mode, max_attempts=1, delay=0):
        working_dir = os.path.abspath(working_dir or os.getcwd())

        # the id names the log file and is what the child reports back with
        job_id = self.store.add(command, working_dir)

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreIOError(f"failed to create log directory {self.log_dir}: {e}", job_id) from e

        log_path = self.log_dir / f"{datetime.now().strftime('%Y%m%d-%H%M%S')}-{job_id}.log"
        self.store.update_log_path(job_id, log_path)

        try:
            log_file = open(log_path, "wb")
        except OSError as e:
            raise StoreIOError(f"failed to create log file {log_path}: {e}", job_id) from e

        with log_file:
            try:
                proc = subprocess.Popen(
                    self.child_argv(job_id, command, mode, max_attempts, delay),
                    cwd=working_dir,
                    env={**os.environ, "BJ_CONFIG_DIR": str(self.config_dir)},
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,  # own session and process group, signalled via -pid
                    close_fds=True,
                )
            except OSError as e:
                raise ProcessError(f"failed to start command: {e}", job_id) from e

            try:
                self.store.update_pid(job_id, proc.pid)
            except JobNotFound:
                # pruned in the meantime; the child still runs, it just can't be killed via bj
                print(f"[{datetime.now().isoformat()}] Job {job_id}: started as pid {proc.pid} but record is gone")

        return job_id

    # ---------------- Completion ----------------
    def complete(self, job_id, exit_code):
        """Completion entry point invoked by the detached child itself."""
        return self.store.complete(job_id, exit_code)


def select_retry_target(store, job_id=None):
    """
    Pick the job to retry.

    Without an id, the most recently started job that failed (None if there is
    none). With an id, that job, provided it has finished unsuccessfully.
    """
    if job_id is None:
        return store.latest_failed()

    job = store.get(job_id)
    if job is None:
        raise JobNotFound(job_id)
    if job.is_running:
        raise StillRunning(job_id)
    if job.exit_code == 0:
        raise AlreadySucceeded(job_id)
    return job


class AttemptLoop:
    """
    Runs inside the detached child: executes the command through the shell,
    repeating per mode, and reports the final exit code back into the ledger.
    Output goes to our stdout, which is the job's log file.
    """

    def __init__(self, job_id, command, shell, on_complete, mode=MODE_ONCE, max_attempts=1, delay=1, sleep=time.sleep):
        if mode not in MODES:
            raise ValueError(f"unknown mode: {mode}")
        self.job_id = job_id
        self.command = command
        self.shell = shell
        self.on_complete = on_complete
        self.mode = mode
        self.max_attempts = 1 if mode == MODE_ONCE else max_attempts
        self.delay = delay
        self.sleep = sleep

    def run(self):
        attempt = 1
        while True:
            if self.mode != MODE_ONCE:
                self._log_transition("waiting", "running", f"(attempt {self._attempt_label(attempt)})")
            exit_code = self._run_once()

            if exit_code == 0 or self.mode == MODE_ONCE:
                return self._finish(exit_code, attempt)

            if self.mode == MODE_RETRY and self.max_attempts and attempt >= self.max_attempts:
                self._log_transition("running", "failed", f"(all {self.max_attempts} attempts failed, exit_code={exit_code})")
                return self._finish(exit_code, attempt)

            verb = "restarting" if self.mode == MODE_RESTART else "retrying"
            self._log_transition("running", "waiting", f"(exit_code={exit_code}, {verb} in {self.delay}s)")
            self.sleep(self.delay)
            attempt += 1

    def _run_once(self):
        sys.stdout.flush()
        try:
            result = subprocess.run([self.shell, "-c", self.command], stdin=subprocess.DEVNULL)
        except OSError as e:
            self._log_transition("running", "failed", f"(could not start {self.shell}: {e})")
            return 127
        return result.returncode

    def _finish(self, exit_code, attempt):
        if exit_code == 0 and self.mode != MODE_ONCE:
            self._log_transition("running", "completed", f"(attempt {attempt})")
        self.on_complete(self.job_id, exit_code)
        return exit_code

    def _attempt_label(self, attempt):
        if self.mode == MODE_RETRY and self.max_attempts:
            return f"{attempt}/{self.max_attempts}"
        return str(attempt)

    def _log_transition(self, old_state, new_state, extra=""):
        now = datetime.now().isoformat(timespec="seconds")
        print(f"[{now}] Job {self.job_id}: {old_state} → {new_state} {extra}", flush=True)
