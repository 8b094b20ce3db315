# cli.py
import json
import os
import subprocess
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

import click

from config import CONFIG_FILE, Config, ConfigError, config_dir, load_config
from errors import JobError
from storage import JobStore
from supervisor import MODES, MODE_ONCE, AttemptLoop, ProcessSupervisor, select_retry_target

# commands run by detached children; they skip housekeeping
INTERNAL_COMMANDS = {"complete", "supervise"}


@dataclass
class Options:
    """Parsed global options plus the objects every command works on."""
    json_output: bool
    config: Config | None
    store: JobStore | None

    def supervisor(self):
        return ProcessSupervisor(self.store, self.config.log_dir_path(), config_dir=self.config.base_dir)


def emit_json(value):
    click.echo(json.dumps(value, indent=2))


def fail(opts, message):
    if opts is not None and opts.json_output:
        emit_json({"error": message})
    else:
        click.echo(f"❌ {message}", err=True)
    sys.exit(1)


@contextmanager
def reporting(opts):
    """Turn core errors into a message and exit status 1."""
    try:
        yield
    except JobError as e:
        fail(opts, str(e))


def job_json(job):
    data = job.to_dict()
    data["status"] = job.status
    return data


def format_duration(delta):
    seconds = int(delta.total_seconds())
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def format_status(job):
    if job.status == "failed":
        return f"exit({job.exit_code})"
    return job.status


@click.group()
@click.option("--json", "json_output", is_flag=True, help="Machine-readable JSON output")
@click.pass_context
def cli(ctx, json_output):
    """bj - background jobs for your shell"""
    opts = Options(json_output=json_output, config=None, store=None)
    try:
        opts.config = load_config()
    except ConfigError as e:
        fail(opts, str(e))

    with reporting(opts):
        opts.store = JobStore.from_config(opts.config)
        # auto-prune successful jobs past the configured age
        if opts.config.auto_prune_hours > 0 and ctx.invoked_subcommand not in INTERNAL_COMMANDS:
            opts.store.prune_older_than(timedelta(hours=opts.config.auto_prune_hours))

    ctx.obj = opts


# ---------------- Run ----------------
@cli.command(context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False})
@click.option("--retry", is_flag=True, help="Re-run the command until it succeeds")
@click.option("--attempts", default=None, type=click.IntRange(min=1), help="With --retry: give up after N attempts")
@click.option("--delay", default=None, type=click.IntRange(min=0), help="With --retry: seconds between attempts (default 1)")
@click.option("--restart", is_flag=True, help="Keep restarting a service every 5s until it exits 0")
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_obj
def run(opts, retry, attempts, delay, restart, command):
    """Run COMMAND in the background"""
    if not retry and (attempts is not None or delay is not None):
        raise click.UsageError("--attempts and --delay can only be used with --retry")
    if retry and restart:
        raise click.UsageError("--retry and --restart are mutually exclusive")

    command = " ".join(command)
    sup = opts.supervisor()
    with reporting(opts):
        if retry:
            job_id = sup.spawn_with_retry(command, os.getcwd(), max_attempts=attempts or 0, delay=1 if delay is None else delay)
        elif restart:
            job_id = sup.spawn_with_restart(command, os.getcwd())
        else:
            job_id = sup.spawn(command, os.getcwd())

    if opts.json_output:
        out = {"id": job_id, "command": command, "status": "started"}
        if retry:
            out.update(max_attempts=attempts or 0, delay_secs=1 if delay is None else delay)
        emit_json(out)
        return

    if retry:
        limit = f"up to {attempts} attempts" if attempts else "until it succeeds"
        click.echo(f"🔁 Job {job_id} started, retrying {limit}: {command}")
    elif restart:
        click.echo(f"♻️ Job {job_id} started, restarting on failure: {command}")
    else:
        click.echo(f"✅ Job {job_id} started: {command}")


# ---------------- Retry ----------------
@cli.command()
@click.option("--id", "job_id", default=None, type=click.IntRange(min=1), help="Job to retry (default: latest failed)")
@click.option("--attempts", default=0, type=click.IntRange(min=0), help="Maximum attempts, 0 = until success")
@click.option("--delay", default=1, type=click.IntRange(min=0), help="Seconds between attempts")
@click.pass_obj
def retry(opts, job_id, attempts, delay):
    """Re-run a failed job as a new job"""
    with reporting(opts):
        job = select_retry_target(opts.store, job_id)
        if job is None:
            if opts.json_output:
                fail(opts, "no failed jobs to retry")
            click.echo("No failed jobs to retry.")
            return
        new_id = opts.supervisor().retry_job(job, max_attempts=attempts, delay=delay)

    if opts.json_output:
        emit_json({
            "id": new_id,
            "command": job.command,
            "status": "started",
            "max_attempts": attempts,
            "delay_secs": delay,
            "original_job": job.id,
        })
    else:
        click.echo(f"🔁 Job {new_id} retrying job {job.id}: {job.command}")


# ---------------- List Jobs ----------------
def _filtered(jobs, running, failed, done):
    if not (running or failed or done):
        return jobs
    keep = []
    for job in jobs:
        if running and job.is_running:
            keep.append(job)
        elif failed and job.is_terminal and job.exit_code != 0:
            keep.append(job)
        elif done and job.exit_code == 0:
            keep.append(job)
    return keep


@cli.command(name="list")
@click.option("--running", is_flag=True, help="Only running jobs")
@click.option("--failed", is_flag=True, help="Only failed jobs")
@click.option("--done", is_flag=True, help="Only successful jobs")
@click.pass_obj
def list_jobs(opts, running, failed, done):
    """List jobs, newest first"""
    with reporting(opts):
        jobs = _filtered(opts.store.list(), running, failed, done)

    if opts.json_output:
        emit_json([job_json(j) for j in jobs])
        return

    if not jobs:
        click.echo("No matching jobs." if (running or failed or done) else "No jobs found.")
        return

    for job in jobs:
        cmd = job.command if len(job.command) <= 40 else job.command[:37] + "..."
        started = job.start_time.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        click.echo(f"{job.id} | {format_status(job)} | started={started} | duration={format_duration(job.duration)} | {cmd}")


@cli.command()
@click.option("--running", is_flag=True)
@click.option("--failed", is_flag=True)
@click.option("--done", is_flag=True)
@click.pass_obj
def ids(opts, running, failed, done):
    """Print job ids, one per line (for shell completion)"""
    with reporting(opts):
        for job in _filtered(opts.store.list(), running, failed, done):
            click.echo(job.id)


@cli.command()
@click.argument("job_id", type=int)
@click.pass_obj
def show(opts, job_id):
    """Show details of a single job"""
    with reporting(opts):
        job = opts.store.get(job_id)
    if job is None:
        fail(opts, f"job {job_id} not found")

    if opts.json_output:
        emit_json(job_json(job))
        return

    click.echo(f"🔎 Job {job.id}")
    click.echo(f"  Command: {job.command}")
    click.echo(f"  Directory: {job.working_dir}")
    click.echo(f"  Status: {job.status}")
    click.echo(f"  Started: {job.start_time.astimezone().isoformat(timespec='seconds')}")
    click.echo(f"  Finished: {job.end_time.astimezone().isoformat(timespec='seconds') if job.end_time else '-'}")
    click.echo(f"  Duration: {format_duration(job.duration)}")
    click.echo(f"  Exit code: {job.exit_code if job.exit_code is not None else '-'}")
    click.echo(f"  PID: {job.pid or '-'}")
    click.echo(f"  Log: {job.log_file or '-'}")


# ---------------- Logs ----------------
@cli.command()
@click.argument("job_id", required=False, type=int)
@click.pass_obj
def logs(opts, job_id):
    """Open a job's log (default: latest job)"""
    with reporting(opts):
        job = opts.store.latest() if job_id is None else opts.store.get(job_id)
    if job is None:
        if job_id is not None:
            fail(opts, f"job {job_id} not found")
        if opts.json_output:
            fail(opts, "no jobs found")
        click.echo("No jobs yet.")
        return

    if not job.log_file or not os.path.exists(job.log_file):
        fail(opts, f"log file not found: {job.log_file or '(none)'}")

    if opts.json_output:
        try:
            with open(job.log_file, encoding="utf-8", errors="replace") as f:
                content = f.read()
        except OSError as e:
            fail(opts, f"failed to read log: {e}")
        emit_json({"job": job_json(job), "content": content})
        return

    try:
        subprocess.run([opts.config.viewer, job.log_file], check=False)
    except OSError as e:
        fail(opts, f"failed to open log with {opts.config.viewer}: {e}")


# ---------------- Kill ----------------
@cli.command()
@click.argument("job_id", required=False, type=int)
@click.pass_obj
def kill(opts, job_id):
    """Terminate a running job (default: latest running job)"""
    with reporting(opts):
        if job_id is None:
            latest = opts.store.latest_running()
            if latest is None:
                if opts.json_output:
                    fail(opts, "no running jobs to kill")
                click.echo("No running jobs to kill.")
                return
            job_id = latest.id
        job = opts.store.kill(job_id)

    if opts.json_output:
        emit_json({"id": job.id, "command": job.command, "status": "killed"})
    else:
        click.echo(f"🛑 Job {job.id} killed: {job.command}")


# ---------------- Prune / GC ----------------
@cli.command()
@click.option("--older-than", "older_than", default=None, type=click.IntRange(min=0), help="Only jobs that finished more than N hours ago")
@click.pass_obj
def prune(opts, older_than):
    """Remove successful jobs and their logs"""
    with reporting(opts):
        if older_than is None:
            count = opts.store.prune()
        else:
            count = opts.store.prune_older_than(timedelta(hours=older_than))

    if opts.json_output:
        emit_json({"pruned": count})
    elif count == 0:
        click.echo("Nothing to prune.")
    else:
        click.echo(f"🧹 Pruned {count} job(s).")


@cli.command()
@click.pass_obj
def gc(opts):
    """Mark jobs whose process has disappeared as orphaned"""
    with reporting(opts):
        count = opts.store.garbage_collect()

    if opts.json_output:
        emit_json({"collected": count})
    elif count == 0:
        click.echo("No orphaned jobs.")
    else:
        click.echo(f"🔧 Marked {count} orphaned job(s) as failed.")


# ---------------- Shell integration ----------------
FISH_INIT = """\
# bj fish integration
# Setup: echo 'bj init fish | source' >> ~/.config/fish/config.fish

function __bj_prompt_info
    set -l running (bj ids --running 2>/dev/null | wc -l | string trim)
    if test -n "$running" -a "$running" -gt 0
        echo -n "[bj:$running] "
    end
end

# Add __bj_prompt_info to your fish_prompt function
"""

ZSH_INIT = """\
# bj zsh integration
# Setup: echo 'eval "$(bj init zsh)"' >> ~/.zshrc

__bj_prompt_info() {
    local running
    running=$(bj ids --running 2>/dev/null | wc -l | tr -d ' ')
    if [[ -n "$running" && "$running" -gt 0 ]]; then
        echo -n "[bj:$running] "
    fi
}

# Example: PROMPT='$(__bj_prompt_info)'$PROMPT
"""

SHELL_INIT = {"fish": FISH_INIT, "zsh": ZSH_INIT}


@cli.command()
@click.argument("shell", type=click.Choice(sorted(SHELL_INIT)))
@click.pass_obj
def init(opts, shell):
    """Housekeeping plus prompt integration, for your shell startup file"""
    # auto-prune already ran in the group callback
    with reporting(opts):
        opts.store.garbage_collect()
    click.echo(SHELL_INIT[shell], nl=False)


# ---------------- Internal: detached child ----------------
@cli.command(hidden=True, context_settings={"ignore_unknown_options": True})
@click.argument("job_id", type=int)
@click.argument("exit_code", type=int)
@click.pass_obj
def complete(opts, job_id, exit_code):
    """Record a job's exit code (called by the job itself)"""
    with reporting(opts):
        opts.supervisor().complete(job_id, exit_code)


@cli.command(hidden=True)
@click.argument("job_id", type=int)
@click.option("--mode", type=click.Choice(MODES), default=MODE_ONCE)
@click.option("--attempts", default=1, type=click.IntRange(min=0))
@click.option("--delay", default=1, type=click.IntRange(min=0))
@click.option("--shell", required=True)
@click.argument("command")
@click.pass_obj
def supervise(opts, job_id, mode, attempts, delay, shell, command):
    """Run a job's command inside the detached child"""
    sup = opts.supervisor()
    loop = AttemptLoop(job_id, command, shell, sup.complete, mode=mode, max_attempts=attempts, delay=delay)
    with reporting(opts):
        loop.run()


# ---------------- Config ----------------
@cli.group()
def config():
    """Inspect bj configuration"""
    pass


@config.command("list")
@click.pass_obj
def config_list(opts):
    """List all config keys"""
    values = opts.config.as_dict()
    if opts.json_output:
        emit_json(values)
        return
    for key, value in values.items():
        click.echo(f"{key}={value}")


@config.command("get")
@click.argument("key")
@click.pass_obj
def config_get(opts, key):
    """Get a config key"""
    values = opts.config.as_dict()
    if key not in values:
        fail(opts, f"unknown config key: {key}")
    click.echo(values[key])


@config.command("path")
def config_path():
    """Print the config file location"""
    click.echo(config_dir() / CONFIG_FILE)


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
