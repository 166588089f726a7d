"""
定时任务调度器。

按 cron 表达式运行命名任务。处理器按任务类型注册，未注册类型只记录日志并返回成功。
单个计时循环负责找出到期任务，每次触发都作为独立的 asyncio 任务执行，
慢处理器不会阻塞其他任务的触发。

停止调度器只取消计时循环，不丢弃任务定义，也不中断正在执行的处理器。
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from netpilot.core.exceptions import NotFoundError
from netpilot.core.storage import JsonCollection, ShardedLog, utc_day
from netpilot.models.base import apply_updates
from netpilot.models.task import ScheduledTask, TaskExecution
from netpilot.services.audit import AuditLogger
from netpilot.services.cron import CronExpression

logger = logging.getLogger(__name__)

TaskHandler = Callable[[ScheduledTask], Awaitable[Any]]

TICK_INTERVAL = 60  # 计时循环最长休眠时间（秒）


def _local_now() -> datetime:
    return datetime.now().astimezone()


class Scheduler:
    """cron 调度器，任务定义持久化在 scheduler/tasks.json，执行记录按日分片。"""

    def __init__(
        self,
        data_dir: Path,
        audit: AuditLogger,
        clock: Callable[[], datetime] = _local_now,
        tick_interval: float = TICK_INTERVAL,
    ) -> None:
        base = Path(data_dir) / "scheduler"
        self._store: JsonCollection[ScheduledTask] = JsonCollection(base / "tasks.json", ScheduledTask)
        self._executions: ShardedLog[TaskExecution] = ShardedLog(base / "executions", "executions", TaskExecution)
        self.audit = audit
        self._clock = clock
        self.tick_interval = tick_interval
        self._handlers: dict[str, TaskHandler] = {}
        self._tasks: Optional[list[ScheduledTask]] = None
        self._lock = asyncio.Lock()
        self._timer: Optional[asyncio.Task] = None
        self._in_flight: dict[str, asyncio.Task] = {}

    def register_handler(self, task_type: str, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler
        logger.debug("Task handler registered: %s", task_type)

    # ------------------------------------------------------------------
    # 任务管理
    # ------------------------------------------------------------------

    async def _ensure_loaded(self) -> list[ScheduledTask]:
        if self._tasks is None:
            self._tasks = await self._store.load()
        return self._tasks

    async def get_tasks(self) -> list[ScheduledTask]:
        async with self._lock:
            return list(await self._ensure_loaded())

    async def get_task(self, task_id: str) -> ScheduledTask:
        async with self._lock:
            for task in await self._ensure_loaded():
                if task.id == task_id:
                    return task
        raise NotFoundError(f"Scheduled task not found: {task_id}")

    async def create_task(
        self,
        name: str,
        task_type: str,
        cron: str,
        enabled: bool = True,
        config: Optional[dict[str, Any]] = None,
    ) -> ScheduledTask:
        """创建任务；cron 非法时抛出 ValidationError，不修改任何状态。"""
        expr = CronExpression(cron)
        task = ScheduledTask(name=name, type=task_type, cron=cron, enabled=enabled, config=config or {})
        if enabled:
            task.next_run_at = expr.next_run(self._clock())
        async with self._lock:
            tasks = await self._ensure_loaded()
            tasks.append(task)
            await self._store.save(tasks)
        logger.info("Scheduled task created: %s (%s) next=%s", task.name, task.cron, task.next_run_at)
        return task

    async def update_task(self, task_id: str, **updates: Any) -> ScheduledTask:
        if "cron" in updates:
            CronExpression(updates["cron"])
        async with self._lock:
            tasks = await self._ensure_loaded()
            for i, task in enumerate(tasks):
                if task.id == task_id:
                    updated = apply_updates(task, updates)
                    updated.next_run_at = (
                        CronExpression(updated.cron).next_run(self._clock()) if updated.enabled else None
                    )
                    tasks[i] = updated
                    await self._store.save(tasks)
                    return updated
        raise NotFoundError(f"Scheduled task not found: {task_id}")

    async def delete_task(self, task_id: str) -> None:
        async with self._lock:
            tasks = await self._ensure_loaded()
            remaining = [t for t in tasks if t.id != task_id]
            if len(remaining) == len(tasks):
                raise NotFoundError(f"Scheduled task not found: {task_id}")
            self._tasks = remaining
            await self._store.save(remaining)
        logger.info("Scheduled task deleted: %s", task_id)

    # ------------------------------------------------------------------
    # 执行
    # ------------------------------------------------------------------

    async def run_task_now(self, task_id: str) -> TaskExecution:
        """立即执行，不受调度时间限制，仍记录执行并更新 last_run_at。"""
        task = await self.get_task(task_id)
        return await self.execute_task(task)

    async def execute_task(self, task: ScheduledTask) -> TaskExecution:
        """
        执行任务处理器并记录结果。

        处理器抛出的任何异常都在这里被捕获，记录为 failed 执行，不向外传播。
        """
        execution = TaskExecution(task_id=task.id, task_name=task.name, started_at=self._clock())
        handler = self._handlers.get(task.type)
        try:
            if handler is None:
                logger.info("Executing task %s (%s): no handler registered", task.name, task.type)
                execution.result = {"message": "Task executed (no handler registered)"}
            else:
                execution.result = await handler(task)
            execution.status = "success"
        except Exception as e:
            logger.exception("Task %s (%s) failed", task.name, task.type)
            execution.status = "failed"
            execution.error = str(e)
        execution.completed_at = self._clock()

        await self._executions.append(execution, utc_day(execution.started_at))
        await self._mark_run(task.id, execution.started_at)
        await self.audit.log(
            "script_execute",
            details={
                "trigger": f"scheduled_task:{task.type}",
                "result": execution.result if execution.status == "success" else None,
                "error": execution.error,
                "metadata": {"task_id": task.id, "task_name": task.name, "execution_id": execution.id},
            },
        )
        logger.info("Task %s finished: %s", task.name, execution.status)
        return execution

    async def _mark_run(self, task_id: str, ran_at: datetime) -> None:
        async with self._lock:
            tasks = await self._ensure_loaded()
            for task in tasks:
                if task.id == task_id:
                    task.last_run_at = ran_at
                    if task.enabled:
                        task.next_run_at = CronExpression(task.cron).next_run(self._clock())
                    await self._store.save(tasks)
                    return

    async def get_executions(self, task_id: Optional[str] = None, limit: int = 100) -> list[TaskExecution]:
        records = await self._executions.read_all()
        if task_id:
            records = [r for r in records if r.task_id == task_id]
        records.sort(key=lambda r: r.started_at, reverse=True)
        return records[:limit]

    # ------------------------------------------------------------------
    # 计时循环
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._timer and not self._timer.done():
            return
        async with self._lock:
            tasks = await self._ensure_loaded()
            now = self._clock()
            for task in tasks:
                if task.enabled and (task.next_run_at is None or task.next_run_at < now):
                    task.next_run_at = CronExpression(task.cron).next_run(now)
            await self._store.save(tasks)
        self._timer = asyncio.create_task(self._timer_loop())
        logger.info("Scheduler started with %d tasks", len(tasks))

    async def stop(self) -> None:
        """取消计时循环；正在执行的处理器继续运行至结束。"""
        if self._timer:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        logger.info("Scheduler stopped")

    async def fire_due(self) -> list[asyncio.Task]:
        """触发所有到期任务，每个任务作为独立 asyncio 任务运行。"""
        now = self._clock()
        due: list[ScheduledTask] = []
        async with self._lock:
            for task in await self._ensure_loaded():
                if not task.enabled or task.next_run_at is None or task.next_run_at > now:
                    continue
                running = self._in_flight.get(task.id)
                if running and not running.done():
                    continue
                # 先推进 next_run_at，避免同一时刻重复触发
                task.next_run_at = CronExpression(task.cron).next_run(now)
                due.append(task)

        fired = []
        for task in due:
            job = asyncio.create_task(self.execute_task(task))
            self._in_flight[task.id] = job
            job.add_done_callback(partial(self._clear_in_flight, task.id))
            fired.append(job)
        return fired

    def _clear_in_flight(self, task_id: str, job: asyncio.Task) -> None:
        if self._in_flight.get(task_id) is job:
            del self._in_flight[task_id]

    def _seconds_until_next(self) -> float:
        now = self._clock()
        upcoming = [
            (t.next_run_at - now).total_seconds()
            for t in (self._tasks or [])
            if t.enabled and t.next_run_at is not None
        ]
        if not upcoming:
            return self.tick_interval
        return max(0.0, min(min(upcoming), self.tick_interval))

    async def _timer_loop(self) -> None:
        while True:
            try:
                await self.fire_due()
            except Exception:
                logger.exception("Scheduler tick failed")
            await asyncio.sleep(self._seconds_until_next() or 1)
