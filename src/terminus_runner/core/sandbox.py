"""
Plugin sandboxing for the Terminus runner.

Each render runs away from the coordinator, either on a worker thread or in a
separate process. Whatever the plugin does (raise, hang, crash the
interpreter) the caller gets back a decodable image.
"""

import base64
import logging
import logging.handlers
import multiprocessing
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from enum import Enum
from queue import Empty
from typing import TYPE_CHECKING, Dict, Optional, Tuple

from ..plugins.base import RenderResult
from ..plugins.fallback import describe_error, fallback_png
from .config import SandboxConfig
from .errors import StartupError

if TYPE_CHECKING:
    from ..plugins.base import BasePlugin

log = logging.getLogger(__name__)

# Shared queue for forwarding logs from child processes to main process
_log_queue: Optional[multiprocessing.Queue] = None

# Render processes inherit the loaded plugin modules instead of importing them
PROCESS_START_METHOD = "fork"


class ExecutionMode(Enum):
    """Where plugin renders run."""

    THREAD = "thread"
    PROCESS = "process"


class RenderAborted(RuntimeError):
    """The render never produced an image (process crash or overlapping render)."""


def set_log_queue(queue: Optional[multiprocessing.Queue]) -> None:
    """Set the log queue for child processes to use."""
    global _log_queue
    _log_queue = queue


def get_log_queue() -> Optional[multiprocessing.Queue]:
    """Get the log queue."""
    return _log_queue


def process_context() -> multiprocessing.context.BaseContext:
    """
    Multiprocessing context for render processes.

    Plugin classes live in modules imported from file paths, which a freshly
    started interpreter cannot find, so render processes must be forked.

    Raises:
        StartupError: If the platform cannot fork
    """
    if PROCESS_START_METHOD not in multiprocessing.get_all_start_methods():
        raise StartupError(
            f"Process execution mode needs the '{PROCESS_START_METHOD}' start method, "
            "which this platform does not support"
        )
    return multiprocessing.get_context(PROCESS_START_METHOD)


def _setup_child_logging(log_queue: multiprocessing.Queue) -> None:
    """Set up logging in child process to forward to main process."""
    # Remove all existing handlers from root logger
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    # Add queue handler to forward logs to main process
    queue_handler = logging.handlers.QueueHandler(log_queue)
    queue_handler.setLevel(logging.INFO)
    root.addHandler(queue_handler)
    root.setLevel(logging.INFO)


def _render_job(plugin: "BasePlugin") -> Tuple[str, Optional[str]]:
    """Render a plugin and report (base64 image, error description)."""
    image = plugin.render_to_base64()
    return image, plugin.last_error


def _process_render(plugin: "BasePlugin", result_queue, log_queue) -> None:
    """
    Render entry point. Runs in a separate process.
    """
    if log_queue:
        _setup_child_logging(log_queue)

    result_queue.put(_render_job(plugin))


def _fallback_b64(plugin: "BasePlugin", error: BaseException) -> str:
    png = fallback_png(plugin.width, plugin.height, plugin.plugin_name, error)
    return base64.b64encode(png).decode("ascii")


class Sandbox:
    """
    Runs plugin renders with crash containment and a bounded duration.

    A plugin never has two renders in flight: if the previous one is still
    running (timed out but not finished), the new request gets an error image.
    """

    def __init__(self, config: Optional[SandboxConfig] = None):
        self.config = config or SandboxConfig()
        self.mode = ExecutionMode(self.config.execution_mode)
        self.timeout = self.config.render_timeout
        self._context = process_context() if self.mode is ExecutionMode.PROCESS else None

        self._executor = ThreadPoolExecutor(
            max_workers=max(1, self.config.max_workers),
            thread_name_prefix="terminus-render",
        )
        self._inflight: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def render(self, plugin: "BasePlugin") -> RenderResult:
        """Render one plugin. Never raises."""
        started = time.monotonic()

        try:
            if self.mode is ExecutionMode.PROCESS:
                image, error = self._render_in_process(plugin)
            else:
                image, error = self._render_in_thread(plugin)
        except Exception as e:
            log.error(f"Plugin '{plugin.plugin_name}' render aborted: {e}")
            image, error = _fallback_b64(plugin, e), describe_error(e)

        result = RenderResult(
            plugin_name=plugin.plugin_name,
            image=image,
            ok=error is None,
            error=error,
            duration=time.monotonic() - started,
        )
        plugin.last_result = result
        log.debug(
            f"Rendered '{plugin.plugin_name}' in {result.duration:.2f}s "
            f"({'ok' if result.ok else result.error})"
        )
        return result

    def _render_in_thread(self, plugin: "BasePlugin") -> Tuple[str, Optional[str]]:
        name = plugin.plugin_name
        with self._lock:
            previous = self._inflight.get(name)
            if previous is not None and not previous.done():
                raise RenderAborted(f"Previous render of '{name}' is still running")
            future = self._executor.submit(_render_job, plugin)
            self._inflight[name] = future

        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            raise TimeoutError(f"Render exceeded {self.timeout:.0f}s") from None

    def _render_in_process(self, plugin: "BasePlugin") -> Tuple[str, Optional[str]]:
        result_queue = self._context.Queue()
        process = self._context.Process(
            target=_process_render,
            args=(plugin, result_queue, get_log_queue()),
            name=f"terminus-{plugin.plugin_name}",
            daemon=True,
        )
        process.start()
        log.debug(f"Rendering '{plugin.plugin_name}' in process {process.pid}")

        deadline = time.monotonic() + self.timeout
        try:
            while True:
                try:
                    return result_queue.get(timeout=0.25)
                except Empty:
                    pass

                if not process.is_alive():
                    # Drain anything flushed just before exit
                    try:
                        return result_queue.get(timeout=0.25)
                    except Empty:
                        raise RenderAborted(
                            f"Render process exited with code {process.exitcode}"
                        ) from None

                if time.monotonic() >= deadline:
                    raise TimeoutError(f"Render exceeded {self.timeout:.0f}s")
        finally:
            process.join(timeout=1.0)
            if process.is_alive():
                log.warning(f"Force terminating render of '{plugin.plugin_name}'")
                process.terminate()
                process.join(timeout=1.0)
            result_queue.close()

    def shutdown(self) -> None:
        """Stop accepting renders. Running threads are not interrupted."""
        self._executor.shutdown(wait=False, cancel_futures=True)
