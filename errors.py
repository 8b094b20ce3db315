# errors.py


class JobError(Exception):
    """Base class for every error the ledger or the supervisor raises."""

    def __init__(self, message, job_id=None):
        super().__init__(message)
        self.job_id = job_id


class JobNotFound(JobError):
    def __init__(self, job_id):
        super().__init__(f"job {job_id} not found", job_id)


class AlreadyTerminal(JobError):
    def __init__(self, job_id, message=None):
        super().__init__(message or f"job {job_id} already finished", job_id)


class AlreadySucceeded(AlreadyTerminal):
    def __init__(self, job_id):
        super().__init__(job_id, f"job {job_id} already succeeded, nothing to retry")


class StillRunning(JobError):
    def __init__(self, job_id):
        super().__init__(f"job {job_id} is still running", job_id)


class NoPID(JobError):
    def __init__(self, job_id):
        super().__init__(f"job {job_id} has no PID recorded", job_id)


class StoreIOError(JobError):
    """Lock, read, write or log-file failure."""


class ProcessError(JobError):
    """Spawn or signal-delivery failure."""
