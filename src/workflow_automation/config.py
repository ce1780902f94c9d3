"""
引擎配置（环境变量）
"""
import os
from dataclasses import dataclass, field
from typing import Dict, Any, Optional

from dotenv import load_dotenv


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() == "true"


@dataclass
class PracticeProfile:
    """诊所信息，用于公共模板变量和管理员收件人"""
    doula_name: str = ""
    doula_email: str = ""
    doula_phone: str = ""
    portal_url: str = ""
    admin_email: Optional[str] = None
    admin_phone: Optional[str] = None


@dataclass
class EngineSettings:
    """引擎配置"""
    database_url: Optional[str] = None  # 为空时使用内存存储
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    # 恢复调度
    sweep_interval: float = 60.0  # 秒
    sweep_batch_size: int = 100
    max_workers: int = 4
    # 重试策略
    retry_max_attempts: int = 3
    retry_initial_delay: float = 1.0  # 秒
    retry_backoff_factor: float = 2.0
    retry_max_delay: float = 60.0  # 秒
    retry_jitter: bool = True
    # 单次推进的步骤上限
    max_steps_per_invocation: int = 500
    practice: PracticeProfile = field(default_factory=PracticeProfile)

    @property
    def retry_policy(self) -> Dict[str, Any]:
        """默认重试策略（字典形式，可被步骤级配置覆盖）"""
        return {
            "max_attempts": self.retry_max_attempts,
            "retry_delay": self.retry_initial_delay,
            "backoff_factor": self.retry_backoff_factor,
            "max_delay": self.retry_max_delay,
            "strategy": "exponential",
            "jitter": self.retry_jitter
        }

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """从环境变量加载配置"""
        load_dotenv()

        practice = PracticeProfile(
            doula_name=os.getenv("PRACTICE_NAME", ""),
            doula_email=os.getenv("PRACTICE_EMAIL", ""),
            doula_phone=os.getenv("PRACTICE_PHONE", ""),
            portal_url=os.getenv("PORTAL_URL", ""),
            admin_email=os.getenv("ADMIN_EMAIL"),
            admin_phone=os.getenv("ADMIN_PHONE")
        )

        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=int(os.getenv("API_PORT", "8000")),
            sweep_interval=float(os.getenv("SWEEP_INTERVAL_SECONDS", "60")),
            sweep_batch_size=int(os.getenv("SWEEP_BATCH_SIZE", "100")),
            max_workers=int(os.getenv("WORKFLOW_WORKERS", "4")),
            retry_max_attempts=int(os.getenv("RETRY_MAX_ATTEMPTS", "3")),
            retry_initial_delay=float(os.getenv("RETRY_INITIAL_DELAY", "1.0")),
            retry_backoff_factor=float(os.getenv("RETRY_BACKOFF_FACTOR", "2.0")),
            retry_max_delay=float(os.getenv("RETRY_MAX_DELAY", "60.0")),
            retry_jitter=_env_bool("RETRY_JITTER", True),
            max_steps_per_invocation=int(os.getenv("MAX_STEPS_PER_INVOCATION", "500")),
            practice=practice
        )
