"""
错误处理与重试策略
"""
import asyncio
import random
import logging
from typing import Dict, Any, Optional, Callable, Awaitable
from dataclasses import dataclass
from enum import Enum

from ..exceptions import (
    TransientDeliveryError, PermanentDeliveryError, ConfigurationError
)


logger = logging.getLogger(__name__)


class ErrorStrategy(Enum):
    """错误处理策略"""
    RETRY = "retry"    # 重试
    FAIL = "fail"      # 失败


class RetryStrategy(Enum):
    """重试延迟策略"""
    FIXED_DELAY = "fixed"                 # 固定延迟
    LINEAR_BACKOFF = "linear"             # 线性退避
    EXPONENTIAL_BACKOFF = "exponential"   # 指数退避


@dataclass
class RetryPolicy:
    """重试策略"""
    max_attempts: int = 3       # 含首次尝试
    retry_delay: float = 1.0    # 秒
    backoff_factor: float = 2.0
    max_delay: float = 60.0     # 秒
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    jitter: bool = True         # 添加随机抖动

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], defaults: "RetryPolicy" = None) -> "RetryPolicy":
        """从字典构建，未给出的键沿用 defaults"""
        base = defaults or cls()
        data = data or {}
        strategy = data.get("strategy", base.strategy)
        if not isinstance(strategy, RetryStrategy):
            strategy = RetryStrategy(strategy)
        return cls(
            max_attempts=max(1, int(data.get("max_attempts", base.max_attempts))),
            retry_delay=float(data.get("retry_delay", base.retry_delay)),
            backoff_factor=float(data.get("backoff_factor", base.backoff_factor)),
            max_delay=float(data.get("max_delay", base.max_delay)),
            strategy=strategy,
            jitter=bool(data.get("jitter", base.jitter))
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "retry_delay": self.retry_delay,
            "backoff_factor": self.backoff_factor,
            "max_delay": self.max_delay,
            "strategy": self.strategy.value,
            "jitter": self.jitter
        }


class ErrorHandler:
    """
    错误处理器

    只有 TransientDeliveryError 会重试；配置错误、永久失败和其他
    未预期异常都直接让运行失败。
    """

    def __init__(
        self,
        default_policy: RetryPolicy = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.default_policy = default_policy or RetryPolicy()
        self._sleep = sleep

    def policy_for(self, overrides: Optional[Dict[str, Any]]) -> RetryPolicy:
        """步骤级 retry_policy 覆盖默认策略"""
        if not overrides:
            return self.default_policy
        return RetryPolicy.from_dict(overrides, self.default_policy)

    def determine_strategy(
        self,
        error: Exception,
        attempt: int,
        policy: RetryPolicy
    ) -> ErrorStrategy:
        """
        确定错误处理策略

        Args:
            error: 本次尝试抛出的异常
            attempt: 本次尝试序号（从 1 开始）
            policy: 生效的重试策略
        """
        if isinstance(error, (ConfigurationError, PermanentDeliveryError)):
            return ErrorStrategy.FAIL
        if isinstance(error, TransientDeliveryError) and attempt < policy.max_attempts:
            return ErrorStrategy.RETRY
        return ErrorStrategy.FAIL

    def calculate_retry_delay(self, retry_count: int, policy: RetryPolicy) -> float:
        """计算第 retry_count 次重试前的延迟（retry_count 从 0 开始）"""
        if policy.strategy == RetryStrategy.FIXED_DELAY:
            delay = policy.retry_delay
        elif policy.strategy == RetryStrategy.LINEAR_BACKOFF:
            delay = policy.retry_delay * (retry_count + 1)
        else:
            delay = policy.retry_delay * (policy.backoff_factor ** retry_count)

        # 限制最大延迟
        delay = min(delay, policy.max_delay)

        if policy.jitter and delay > 0:
            delay += random.uniform(0, delay * 0.1)

        return delay

    async def wait_before_retry(self, step_key: str, retry_count: int, policy: RetryPolicy):
        """等待退避延迟"""
        delay = self.calculate_retry_delay(retry_count, policy)
        logger.info(
            f"Retrying step {step_key} after {delay:.2f}s "
            f"(attempt {retry_count + 2}/{policy.max_attempts})"
        )
        if delay > 0:
            await self._sleep(delay)
