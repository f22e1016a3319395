"""Worker invocation interface and adapters."""

from reactree.workers.base import BaseWorker, FunctionWorker, WorkerInvocation, WorkerRegistry
from reactree.workers.http import HttpWorker

__all__ = ["BaseWorker", "FunctionWorker", "WorkerInvocation", "WorkerRegistry", "HttpWorker"]
