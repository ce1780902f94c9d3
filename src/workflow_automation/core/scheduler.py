"""
恢复调度器：定期唤醒到期的等待运行
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, Optional, Callable, List

from ..config import EngineSettings
from ..models.workflow import utcnow
from ..storage.repository import RunRepository
from .engine import ExecutionEngine


logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """一次扫描的结果"""
    started_at: datetime
    due: int = 0
    resumed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "due": self.due,
            "resumed": self.resumed,
            "skipped": self.skipped,
            "failed": self.failed,
        }


class ResumptionScheduler:
    """
    恢复调度器

    每个扫描周期查询 status=waiting 且 wait_until <= now 的运行，
    在有界并发下逐个交给执行引擎恢复。单个运行失败不影响其他运行。
    """

    def __init__(
        self,
        run_repository: RunRepository,
        engine: ExecutionEngine,
        settings: EngineSettings = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.settings = settings or EngineSettings()
        self.run_repository = run_repository
        self.engine = engine
        self.clock = clock
        self._semaphore = asyncio.Semaphore(self.settings.max_workers)
        self._scheduler_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.sweeps = 0
        self.total_resumed = 0
        self.last_sweep: Optional[SweepResult] = None

    @property
    def is_running(self) -> bool:
        return self._scheduler_task is not None

    async def start(self):
        """启动调度器"""
        if self._scheduler_task:
            return

        self._stop_event.clear()
        self._scheduler_task = asyncio.create_task(self._scheduler_loop())
        logger.info(f"Resumption scheduler started (interval {self.settings.sweep_interval}s)")

    async def stop(self):
        """停止调度器"""
        if not self._scheduler_task:
            return

        self._stop_event.set()
        await self._scheduler_task
        self._scheduler_task = None
        logger.info("Resumption scheduler stopped")

    async def _scheduler_loop(self):
        """调度器主循环"""
        while not self._stop_event.is_set():
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Resumption sweep failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.settings.sweep_interval)
            except asyncio.TimeoutError:
                pass

    async def sweep(self, now: datetime = None) -> SweepResult:
        """扫描一次并恢复所有到期运行"""
        now = now or self.clock()
        result = SweepResult(started_at=now)
        due = await self.run_repository.list_due(now, self.settings.sweep_batch_size)
        result.due = len(due)

        if due:
            logger.info(f"Resuming {len(due)} due runs")
            await asyncio.gather(*(self._resume(run.id, now, result) for run in due))

        self.sweeps += 1
        self.total_resumed += len(result.resumed)
        self.last_sweep = result
        return result

    async def _resume(self, run_id: str, now: datetime, result: SweepResult):
        async with self._semaphore:
            try:
                run = await self.engine.resume_run(run_id, now)
            except Exception as e:
                logger.error(
                    f"Failed to resume run {run_id}: {e}",
                    exc_info=True,
                    extra={"run_id": run_id}
                )
                result.failed[run_id] = str(e)
                return

        if run is None:
            result.skipped.append(run_id)
        else:
            result.resumed.append(run_id)

    def get_scheduler_stats(self) -> Dict[str, Any]:
        """获取调度器统计信息"""
        return {
            "running": self.is_running,
            "sweeps": self.sweeps,
            "total_resumed": self.total_resumed,
            "sweep_interval": self.settings.sweep_interval,
            "max_workers": self.settings.max_workers,
            "last_sweep": self.last_sweep.to_dict() if self.last_sweep else None,
        }
