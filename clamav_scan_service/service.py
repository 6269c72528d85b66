"""Lifecycle of long running background services.

A service goes through these states, no other transition exists:

    CREATED -> INITIALISING        start()
    INITIALISING -> RUNNING        worker loop has begun
    RUNNING -> CLOSED              close()
    INITIALISING -> CLOSED         start() failed

Subclasses implement ``on_start`` (typically spawning a worker with
``start_service_thread``) and ``on_close``.  Worker loops poll
``is_in_running_state`` and sleep through their ``WorkerTask`` so that
``close`` wakes them up right away.

"""
import abc
import itertools
import logging
import threading
import typing as t
from enum import Enum

logger = logging.getLogger(__name__)


class ServiceStatus(Enum):
    CREATED = "CREATED"
    INITIALISING = "INITIALISING"
    RUNNING = "RUNNING"
    CLOSED = "CLOSED"


class ServiceLifecycleError(RuntimeError):
    """Raised when a service is started or closed from a state that does
    not allow it, or when its start/close hook failed.
    """


class WorkerTask:
    """Daemon thread running a worker function, along with the signal
    asking it to stop.

    The worker function receives the task as only argument.
    """
    def __init__(self, name: str, target: t.Callable[["WorkerTask"], None]):
        self.name = name
        self._target = target
        self._cancelled = threading.Event()
        # daemon: a worker must not block interpreter shutdown
        self._thread = threading.Thread(target=self._run, name=name,
                                        daemon=True)

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        self._cancelled.set()

    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def sleep(self, seconds: float) -> bool:
        """Sleep unless cancelled.

        :return: True if the task was cancelled meanwhile
        """
        return self._cancelled.wait(seconds)

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    def _run(self) -> None:
        logger.debug("Worker %s started", self.name)
        try:
            self._target(self)
        except Exception:
            logger.exception("Worker %s terminated by an error", self.name)
        else:
            logger.debug("Worker %s terminated", self.name)


class WorkerRegistry:
    """Hands out unique worker names and spawns worker tasks.
    """
    def __init__(self):
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            return next(self._ids)

    def spawn(self,
              prefix: str,
              target: t.Callable[[WorkerTask], None]) -> WorkerTask:
        task = WorkerTask(f"{prefix}-worker-{self.next_id()}", target)
        task.start()
        return task


default_registry = WorkerRegistry()


class Service(abc.ABC):
    """Base of long running background services.
    """
    def __init__(self, registry: WorkerRegistry | None = None):
        self._registry = registry or default_registry
        self._status = ServiceStatus.CREATED
        self._status_lock = threading.Lock()
        self._running = threading.Event()
        self._workers: list[WorkerTask] = []

    @property
    def name(self) -> str:
        return type(self).__name__

    @abc.abstractmethod
    def on_start(self) -> None:
        """Initialise the service, called on start().
        """

    @abc.abstractmethod
    def on_close(self) -> None:
        """Release the service resources, called on close().
        """

    @property
    def status(self) -> ServiceStatus:
        with self._status_lock:
            return self._status

    def start(self) -> None:
        """Start the service.

        :raises ServiceLifecycleError: If the service is not in CREATED
            state or failed to start
        """
        if not self._compare_and_set(ServiceStatus.CREATED,
                                     ServiceStatus.INITIALISING):
            raise ServiceLifecycleError(
                f"Rejected to start the service '{self.name}'. "
                f"The service is in status {self.status.value}")

        logger.info("Starting service %s", self.name)
        try:
            self.on_start()
        except Exception as e:
            self._force_closed()
            raise ServiceLifecycleError(
                f"Failed to start the service '{self.name}'!") from e

    def close(self) -> None:
        """Close the service.

        :raises ServiceLifecycleError: If the service is not in RUNNING
            state or failed to close
        """
        if not self._compare_and_set(ServiceStatus.RUNNING,
                                     ServiceStatus.CLOSED):
            raise ServiceLifecycleError(
                f"Rejected to close the service '{self.name}'. "
                f"The service is in status {self.status.value}")

        logger.info("Closing service %s", self.name)
        self._cancel_workers()
        try:
            self.on_close()
        except Exception as e:
            raise ServiceLifecycleError(
                f"Failed to close the service '{self.name}'!") from e

    def is_in_running_state(self) -> bool:
        return self.status is ServiceStatus.RUNNING

    def is_in_closed_state(self) -> bool:
        return self.status is ServiceStatus.CLOSED

    def wait_running(self, timeout: float | None = None) -> bool:
        """Block until the service entered RUNNING state.

        :return: False on timeout
        """
        return self._running.wait(timeout)

    def entered_running_state(self) -> bool:
        """Mark the service as running, called by the worker once its
        loop has begun.

        :return: False if the service is not initialising anymore
        """
        if self._compare_and_set(ServiceStatus.INITIALISING,
                                 ServiceStatus.RUNNING):
            logger.info("Service %s is running", self.name)
            self._running.set()
            return True
        return False

    def start_service_thread(
            self, target: t.Callable[[WorkerTask], None]) -> WorkerTask:
        """Spawn a daemon worker thread owned by this service.
        """
        task = self._registry.spawn(self.name, target)
        self._workers.append(task)
        return task

    def join_workers(self, timeout: float | None = None) -> None:
        for task in self._workers:
            task.join(timeout)

    def _compare_and_set(self,
                         expected: ServiceStatus,
                         update: ServiceStatus) -> bool:
        with self._status_lock:
            if self._status is not expected:
                return False
            self._status = update
            return True

    def _force_closed(self) -> None:
        with self._status_lock:
            self._status = ServiceStatus.CLOSED
        self._cancel_workers()

    def _cancel_workers(self) -> None:
        for task in self._workers:
            task.cancel()

    def __enter__(self):
        self.start()
        self.wait_running()
        return self

    def __exit__(self, *args, **kwargs):
        if self.is_in_running_state():
            self.close()
        return False
