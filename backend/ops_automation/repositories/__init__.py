"""Repository package for data access layer."""

from ops_automation.repositories.automation_repository import ExecutionLogRepository, RuleRepository

__all__ = ["RuleRepository", "ExecutionLogRepository"]
