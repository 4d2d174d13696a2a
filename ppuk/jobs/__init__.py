"""
PPUK Jobs — durable document processing queue.

ppuk.jobs.tasks is not imported here: importing it builds the Celery app
from ppuk.yaml.
"""

from ppuk.jobs.handlers import HandlerRegistry, build_default_registry  # noqa: F401
from ppuk.jobs.queue import DocumentJobQueue  # noqa: F401
from ppuk.jobs.worker import DocumentWorker  # noqa: F401

__all__ = [
    "DocumentJobQueue",
    "DocumentWorker",
    "HandlerRegistry",
    "build_default_registry",
]
