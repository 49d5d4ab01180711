"""
Task registry initialization.

Registers the built-in worker tasks with the global task registry.
"""

from api.config.logging import get_logger
from api.v1.core.registries import task_registry
from api.v1.infra.jobs.tasks import count_primes

logger = get_logger(__name__)

DEFAULT_TASK = "count_primes"


def register_tasks() -> None:
    """Register all built-in tasks with the task registry."""
    if DEFAULT_TASK not in task_registry:
        task_registry.register(DEFAULT_TASK, count_primes)

    logger.debug("Tasks registered", registered_tasks=task_registry.list())


# Auto-register tasks when module is imported
register_tasks()
