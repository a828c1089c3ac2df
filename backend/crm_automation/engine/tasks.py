"""Background task supervision for trigger pipelines and flow walks"""
import asyncio
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional, Set

from ..utils.logger import get_logger, get_correlation_id, set_correlation_id

logger = get_logger(__name__)

FailureHook = Callable[[BaseException], Awaitable[None]]


class TaskSupervisor:
    """
    Owns every background unit of work the engines launch

    Each spawned task keeps a handle here until it finishes. Failures are
    logged (and handed to an optional async hook so the caller can record
    them on the owning entity) instead of vanishing with the task.
    """

    def __init__(self, name: str = "automation"):
        self._name = name
        self._tasks: Set[asyncio.Task] = set()
        self._failure_hooks: Dict[asyncio.Task, FailureHook] = {}

    def spawn(
        self,
        coro: Coroutine[Any, Any, Any],
        *,
        name: str,
        on_failure: Optional[FailureHook] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> asyncio.Task:
        """Schedule ``coro`` on the running loop and track it"""
        correlation_id = get_correlation_id()

        async def runner() -> Any:
            if correlation_id:
                set_correlation_id(correlation_id)
            return await coro

        task = asyncio.get_running_loop().create_task(runner(), name=name)
        self._tasks.add(task)
        if on_failure is not None:
            self._failure_hooks[task] = on_failure
        task.add_done_callback(lambda t: self._on_done(t, context or {}))
        return task

    def _on_done(self, task: asyncio.Task, context: Dict[str, Any]) -> None:
        self._tasks.discard(task)
        hook = self._failure_hooks.pop(task, None)

        if task.cancelled():
            logger.info(f"Task {task.get_name()} cancelled", extra=context)
            return

        exc = task.exception()
        if exc is None:
            return

        logger.error(
            f"Task {task.get_name()} failed: {exc}",
            exc_info=(type(exc), exc, exc.__traceback__),
            extra=context
        )
        if hook is not None:
            follow_up = asyncio.get_running_loop().create_task(self._run_hook(task.get_name(), hook, exc))
            self._tasks.add(follow_up)
            follow_up.add_done_callback(self._tasks.discard)

    async def _run_hook(self, task_name: str, hook: FailureHook, exc: BaseException) -> None:
        try:
            await hook(exc)
        except Exception as e:
            logger.error(f"Failure hook for {task_name} raised: {e}", exc_info=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until every tracked task (including ones spawned meanwhile) finishes"""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(deadline - loop.time(), 0)
            await asyncio.wait(set(self._tasks), timeout=remaining)
            if deadline is not None and loop.time() >= deadline and self._tasks:
                logger.warning(f"{self._name} supervisor drain timed out with {len(self._tasks)} tasks pending")
                return

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Drain, then cancel whatever is still running"""
        await self.drain(timeout=timeout)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info(f"{self._name} supervisor stopped")
