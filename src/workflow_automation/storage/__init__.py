"""
存储层
"""
from .repository import (
    WorkflowRepository,
    RunRepository,
    InMemoryWorkflowRepository,
    InMemoryRunRepository,
)
from .sqlalchemy_repository import (
    DatabaseManager,
    SQLAlchemyWorkflowRepository,
    SQLAlchemyRunRepository,
)

__all__ = [
    "WorkflowRepository",
    "RunRepository",
    "InMemoryWorkflowRepository",
    "InMemoryRunRepository",
    "DatabaseManager",
    "SQLAlchemyWorkflowRepository",
    "SQLAlchemyRunRepository",
]
