"""
API 路由模块
"""
from . import workflows, runs, records, monitoring

__all__ = ["workflows", "runs", "records", "monitoring"]
