"""Automation rule engine for business-operations entities.

Operators declare "when trigger X occurs, perform action Y" rules. This
package provides:

- Trigger conditions (structured or condition text) and their evaluation
- Event-driven matching of domain mutations
- Time-driven scans of entity state on a scheduler tick
- An action registry with the built-in actions
- A dispatcher writing one execution log entry per action run
"""

# Condition parsing and evaluation
from ops_automation.automation.conditions import parse_condition, dump_condition
from ops_automation.automation.parser import ConditionParser
from ops_automation.automation.evaluator import ConditionEvaluator, match_event, scan_entities
from ops_automation.automation.context import EvaluationContext

# Registries
from ops_automation.automation.action_registry import ActionHandler, ActionRegistry
from ops_automation.automation.actions import build_default_registry
from ops_automation.automation.rule_registry import RuleRegistry

# Dispatch and scheduling
from ops_automation.automation.dispatcher import Dispatcher, DispatchOutcome
from ops_automation.automation.scheduler import Scheduler, SchedulerState
from ops_automation.automation.worker_pool import WorkerPool
from ops_automation.automation.event_emitter import DomainEventEmitter

# Data models
from ops_automation.automation.models import (
    TriggerType,
    TriggerFamily,
    EntityKind,
    DeliveryChannel,
    ExecutionStatus,
    TriggerContext,
    DomainEvent,
    RuleDef,
    ActionResult,
    Match,
)

__all__ = [
    "parse_condition",
    "dump_condition",
    "ConditionParser",
    "ConditionEvaluator",
    "match_event",
    "scan_entities",
    "EvaluationContext",
    "ActionHandler",
    "ActionRegistry",
    "build_default_registry",
    "RuleRegistry",
    "Dispatcher",
    "DispatchOutcome",
    "Scheduler",
    "SchedulerState",
    "WorkerPool",
    "DomainEventEmitter",
    "TriggerType",
    "TriggerFamily",
    "EntityKind",
    "DeliveryChannel",
    "ExecutionStatus",
    "TriggerContext",
    "DomainEvent",
    "RuleDef",
    "ActionResult",
    "Match",
]
