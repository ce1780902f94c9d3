"""
Doula CRM Workflow Automation API 主入口
"""
import logging
import uvicorn

from workflow_automation.config import EngineSettings
from workflow_automation.api import create_app

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# 加载环境变量并创建应用
settings = EngineSettings.from_env()
app = create_app(settings)


if __name__ == "__main__":
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="info"
    )
