from .config import (
    ANALYTICS_COLLECTION,
    MEDIA_PROCESSING,
    NOTIFICATION_DISPATCH,
    POST_SCHEDULING,
    BackoffOptions,
    JobOptions,
    QueueManagerConfig,
    RedisSettings,
    RepeatOptions,
    WorkerSettings,
    load_config,
)
from .exceptions import (
    BrokerUnavailable,
    ConfigurationError,
    InvalidJobState,
    JobNotFound,
    JobQueueError,
    LeaseLost,
    ProcessorAlreadyRegistered,
    ProcessorNotRegistered,
    QueueNotFound,
    UnrecoverableError,
    ValidationError,
)
from .events import QueueEvent
from .job_scheduler import JobScheduler
from .manager import QueueManager
from .models import Job, JobHandle, JobResult, JobSpec, OwnerContext, QueueStats

__version__ = "0.1.0"
