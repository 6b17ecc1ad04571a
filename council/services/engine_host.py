"""Background event loop hosting the pipeline engine for the Flask app."""

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class EngineHost:
    """Runs an asyncio event loop on a daemon thread.

    Flask request handlers are synchronous; they hand coroutines to the loop
    with ``submit`` (fire and forget) or ``run`` (wait for the result), and
    use ``call`` for synchronous controller methods that touch asyncio
    objects, which must run on the loop's own thread.
    """

    def __init__(self, name: str = "council-engine"):
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._started = threading.Event()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise RuntimeError("Engine host is not running")
        return self._loop

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "EngineHost":
        if self.is_running:
            return self
        self._started.clear()
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()
        self._started.wait()
        logger.info(f"Engine host started on thread {self.name}")
        return self

    def _run_loop(self):
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._started.set()
        try:
            self._loop.run_forever()
        finally:
            self._loop.close()

    def stop(self, timeout: float = 5.0):
        if not self.is_running:
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout)
        self._thread = None
        self._loop = None
        logger.info("Engine host stopped")

    def submit(self, coro: Awaitable[Any]) -> Future:
        """Schedule a coroutine on the engine loop."""
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        future.add_done_callback(self._log_failure)
        return future

    def run(self, coro: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """Run a coroutine on the engine loop and wait for its result."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def call(self, func: Callable[..., Any], *args, timeout: Optional[float] = 10.0, **kwargs) -> Any:
        """Run a synchronous callable on the engine loop thread and return its result."""
        async def invoke():
            return func(*args, **kwargs)

        return self.run(invoke(), timeout)

    @staticmethod
    def _log_failure(future: Future):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Background engine task failed: {error}")
