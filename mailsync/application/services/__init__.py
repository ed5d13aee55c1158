"""Application services: token lifecycle, scheduling, queueing, execution, connections."""

from mailsync.application.services.adapter_invoker import invoke_adapter
from mailsync.application.services.job_queue import PriorityJobQueue
from mailsync.application.services.provider_connection_service import (
    ProviderConnectionService,
    rebalance_defaults,
)
from mailsync.application.services.scheduler_state import SchedulerStateStore
from mailsync.application.services.sync_executor import SyncExecutor
from mailsync.application.services.sync_policy import CadencePolicy
from mailsync.application.services.sync_scheduler import SyncScheduler
from mailsync.application.services.token_lifecycle_manager import TokenLifecycleManager
from mailsync.application.services.worker_pool import WorkerPool

__all__ = [
    "CadencePolicy",
    "PriorityJobQueue",
    "ProviderConnectionService",
    "SchedulerStateStore",
    "SyncExecutor",
    "SyncScheduler",
    "TokenLifecycleManager",
    "WorkerPool",
    "invoke_adapter",
    "rebalance_defaults",
]
