"""Lifecycle supervision of the routing process."""

import queue
import subprocess
import threading
from enum import Enum
from typing import List, Optional

from .errors import AlreadyRunningError, IngressKeeperError, LaunchError
from .logging_config import get_logger, log_process_event
from .models import ProcessStatus

logger = get_logger(__name__)


class SupervisorCommand(str, Enum):
    START = "start"
    STOP = "stop"
    SHUTDOWN = "shutdown"


class ProcessSupervisor:
    """Own the routing process handle and serialize its lifecycle transitions.

    ``start``/``stop`` act immediately and raise on failure. Watchers use
    ``request_start``/``request_stop`` instead, which queue the transition for
    the supervisor's worker thread; failures there are logged, never raised,
    so event consumption carries on.
    """

    def __init__(self, command: List[str], working_dir: str, stop_timeout: float = 10.0) -> None:
        self.command = list(command)
        self.working_dir = working_dir
        self.stop_timeout = stop_timeout
        self._process: Optional[subprocess.Popen] = None
        self._launches = 0
        self._lock = threading.RLock()
        self._commands: "queue.Queue[SupervisorCommand]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._closed = False

    def _is_live(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def start(self) -> None:
        """Launch the routing process.

        Raises:
            AlreadyRunningError: If a live process exists; nothing is launched.
            LaunchError: If the executable or working directory is missing.
        """
        with self._lock:
            if self._is_live():
                raise AlreadyRunningError(f"routing process already running (pid {self._process.pid})")

            if self._process is not None:
                log_process_event(logger, "exited", pid=self._process.pid,
                                  returncode=self._process.returncode)

            try:
                self._process = subprocess.Popen(self.command, cwd=self.working_dir)
            except OSError as e:
                logger.error("Failed to launch routing process", command=self.command,
                             working_dir=self.working_dir, error=str(e))
                raise LaunchError(f"cannot launch {self.command[0]} in {self.working_dir}: {e}") from e

            self._launches += 1
            log_process_event(logger, "started", pid=self._process.pid, command=self.command,
                              working_dir=self.working_dir)

    def stop(self) -> None:
        """Terminate the routing process gracefully, killing it after ``stop_timeout``."""
        with self._lock:
            if not self._is_live():
                logger.debug("No routing process to stop")
                return

            process = self._process
            process.terminate()
            try:
                process.wait(timeout=self.stop_timeout)
            except subprocess.TimeoutExpired:
                logger.warning("Routing process did not exit, killing", pid=process.pid,
                               timeout=self.stop_timeout)
                process.kill()
                process.wait()
            log_process_event(logger, "stopped", pid=process.pid, returncode=process.returncode)

    def status(self) -> ProcessStatus:
        with self._lock:
            if self._process is None:
                return ProcessStatus(launches=self._launches)
            return ProcessStatus(
                running=self._is_live(),
                pid=self._process.pid,
                returncode=self._process.returncode,
                launches=self._launches,
            )

    def request_start(self) -> None:
        """Queue a start of the routing process."""
        self._submit(SupervisorCommand.START)

    def request_stop(self) -> None:
        """Queue a stop of the routing process."""
        self._submit(SupervisorCommand.STOP)

    def _submit(self, command: SupervisorCommand) -> None:
        with self._lock:
            if self._closed:
                logger.warning("Supervisor shut down, command ignored", command=command.value)
                return
            self._ensure_worker()
            self._commands.put(command)
        logger.debug("Supervisor command queued", command=command.value)

    def _ensure_worker(self) -> None:
        if self._worker is None or not self._worker.is_alive():
            self._worker = threading.Thread(target=self._run, name="supervisor", daemon=True)
            self._worker.start()

    def _run(self) -> None:
        while True:
            command = self._commands.get()
            try:
                if command is SupervisorCommand.SHUTDOWN:
                    return
                if command is SupervisorCommand.START:
                    self.start()
                elif command is SupervisorCommand.STOP:
                    self.stop()
            except AlreadyRunningError as e:
                logger.info("Routing process start skipped", reason=str(e))
            except IngressKeeperError as e:
                logger.error("Routing process command failed", command=command.value, error=str(e))
            except Exception:
                logger.exception("Unexpected supervisor failure", command=command.value)
            finally:
                self._commands.task_done()

    def join(self) -> None:
        """Block until every queued command has been applied."""
        self._commands.join()

    def shutdown(self) -> None:
        """Apply pending commands, stop the worker and make sure no child is left running.

        Commands requested afterwards are ignored.
        """
        with self._lock:
            self._closed = True
            worker = self._worker
            if worker is not None and worker.is_alive():
                self._commands.put(SupervisorCommand.SHUTDOWN)
        if worker is not None:
            worker.join()
        self.stop()
        logger.info("Process supervisor shut down", launches=self._launches)
