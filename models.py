# models.py
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

# Exit codes the ledger assigns on its own
EXIT_ORPHANED = -1
EXIT_KILLED = -15

# Window after start during which a job may still be waiting for its pid
GRACE_PERIOD = timedelta(seconds=5)


def utcnow():
    return datetime.now(timezone.utc)


def _parse_time(value):
    if value is None:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class Job:
    id: int
    command: str
    working_dir: str
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    exit_code: Optional[int] = None
    log_file: str = ""
    pid: int = 0

    @property
    def is_running(self):
        return self.exit_code is None

    @property
    def is_terminal(self):
        return self.exit_code is not None

    @property
    def status(self):
        """running | incomplete | done | killed | orphaned | failed"""
        if self.exit_code is None:
            # never got a pid and is past the window where one could still arrive
            if self.pid == 0 and utcnow() - self.start_time >= GRACE_PERIOD:
                return "incomplete"
            return "running"
        if self.exit_code == 0:
            return "done"
        if self.exit_code == EXIT_KILLED:
            return "killed"
        if self.exit_code == EXIT_ORPHANED:
            return "orphaned"
        return "failed"

    @property
    def duration(self) -> timedelta:
        end = self.end_time or utcnow()
        return end - self.start_time

    def mark_terminal(self, exit_code, when=None):
        self.exit_code = exit_code
        self.end_time = when or utcnow()

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "cmd": self.command,
            "pwd": self.working_dir,
            "start_time": self.start_time.isoformat(),
        }
        if self.end_time is not None:
            data["end_time"] = self.end_time.isoformat()
        if self.exit_code is not None:
            data["exit_code"] = self.exit_code
        data["log_file"] = self.log_file
        if self.pid:
            data["pid"] = self.pid
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        return cls(
            id=int(data["id"]),
            command=data.get("cmd", ""),
            working_dir=data.get("pwd", ""),
            start_time=_parse_time(data["start_time"]),
            end_time=_parse_time(data.get("end_time")),
            exit_code=data.get("exit_code"),
            log_file=data.get("log_file", ""),
            pid=int(data.get("pid", 0)),
        )
