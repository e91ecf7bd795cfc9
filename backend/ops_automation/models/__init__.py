# Database models
from ops_automation.models.automation import AutomationRule, ExecutionLog
from ops_automation.models.entity import BusinessEntity, Notification

__all__ = [
    "AutomationRule",
    "ExecutionLog",
    "BusinessEntity",
    "Notification",
]
