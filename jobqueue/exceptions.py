from typing import Optional


class JobQueueError(Exception):
    """Base class for every error raised by the job queue."""


class ValidationError(JobQueueError, ValueError):
    """A job was rejected at submission time; it was never enqueued."""


class ConfigurationError(JobQueueError):
    """Invalid settings. Raised during initialization and meant to be fatal."""


class BrokerUnavailable(JobQueueError):
    def __init__(self, reason: str = ""):
        super().__init__(f"Broker unavailable: {reason}" if reason else "Broker unavailable.")
        self.reason = reason


class QueueNotFound(JobQueueError):
    def __init__(self, queue_name: str):
        super().__init__(f"Queue {queue_name} not found.")
        self.queue_name = queue_name


class JobNotFound(JobQueueError):
    def __init__(self, job_id: str, queue_name: Optional[str] = None):
        where = f" in queue {queue_name}" if queue_name else ""
        super().__init__(f"Job {job_id} not found{where}.")
        self.job_id = job_id
        self.queue_name = queue_name


class InvalidJobState(JobQueueError):
    def __init__(self, job_id: str, state: Optional[str], expected: str):
        super().__init__(f"Job {job_id} is {state or 'unknown'}, expected {expected}.")
        self.job_id = job_id
        self.state = state
        self.expected = expected


class ProcessorAlreadyRegistered(JobQueueError):
    def __init__(self, queue_name: str, job_type: Optional[str] = None):
        target = f"{queue_name}/{job_type}" if job_type else queue_name
        super().__init__(f"A processor is already registered for {target}.")
        self.queue_name = queue_name
        self.job_type = job_type


class ProcessorNotRegistered(JobQueueError):
    def __init__(self, queue_name: str, job_type: Optional[str] = None):
        target = f"{queue_name}/{job_type}" if job_type else queue_name
        super().__init__(f"No processor registered for {target}.")
        self.queue_name = queue_name
        self.job_type = job_type


class LeaseLost(JobQueueError):
    """The worker no longer holds the job; its outcome must be discarded."""

    def __init__(self, job_id: str):
        super().__init__(f"Lease on job {job_id} was lost.")
        self.job_id = job_id


class UnrecoverableError(JobQueueError):
    """Raised by a processor to fail a job without further retries."""
