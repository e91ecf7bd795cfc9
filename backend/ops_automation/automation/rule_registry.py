"""In-memory registry of automation rules."""

from dataclasses import replace
from datetime import datetime

from ops_automation.automation.models import TRIGGER_SPECS, RuleDef, TriggerFamily, TriggerType


class RuleRegistry:
    """Registry for the rules the dispatcher evaluates.

    The registry mirrors the persisted rules and indexes them by trigger
    type. The management service updates it synchronously after each
    write, so a toggle or delete takes effect for every match evaluated
    after the call returns.
    """

    def __init__(self):
        """Initialize an empty registry."""
        self._rules: dict[str, RuleDef] = {}
        self._trigger_index: dict[TriggerType, list[str]] = {}

    def register(self, rule: RuleDef) -> None:
        """Register a rule, replacing any rule with the same id.

        Args:
            rule: The rule definition to register
        """
        if rule.id in self._rules:
            self.remove(rule.id)

        self._rules[rule.id] = rule
        self._trigger_index.setdefault(rule.trigger_type, []).append(rule.id)

    def remove(self, rule_id: str) -> RuleDef | None:
        """Remove a rule; returns it, or None if it was not registered."""
        rule = self._rules.pop(rule_id, None)
        if rule is not None:
            ids = self._trigger_index.get(rule.trigger_type, [])
            if rule_id in ids:
                ids.remove(rule_id)
        return rule

    def lookup(self, rule_id: str) -> RuleDef | None:
        """Look up a rule by id.

        Returns:
            The rule definition or None if not found
        """
        return self._rules.get(rule_id)

    def set_enabled(self, rule_id: str, enabled: bool) -> RuleDef | None:
        rule = self._rules.get(rule_id)
        if rule is None:
            return None
        self._rules[rule_id] = replace(rule, enabled=enabled)
        return self._rules[rule_id]

    def record_run(self, rule_id: str, ran_at: datetime) -> None:
        """Advance a rule's cached last_run_at; never moves it backwards."""
        rule = self._rules.get(rule_id)
        if rule is None:
            return
        if rule.last_run_at is None or rule.last_run_at < ran_at:
            self._rules[rule_id] = replace(rule, last_run_at=ran_at)

    def get_by_trigger(self, trigger_type: TriggerType, enabled_only: bool = True) -> list[RuleDef]:
        """Get rules of a trigger type, in registration order."""
        rules = [self._rules[rid] for rid in self._trigger_index.get(trigger_type, [])]
        if enabled_only:
            rules = [r for r in rules if r.enabled]
        return rules

    def get_by_family(self, family: TriggerFamily, enabled_only: bool = True) -> list[RuleDef]:
        """Get rules whose trigger type belongs to a family."""
        rules: list[RuleDef] = []
        for trigger_type in TriggerType:
            if TRIGGER_SPECS[trigger_type].family == family:
                rules.extend(self.get_by_trigger(trigger_type, enabled_only))
        return rules

    def get_all(self) -> list[RuleDef]:
        return list(self._rules.values())

    def clear(self) -> None:
        """Clear all registered rules."""
        self._rules.clear()
        self._trigger_index.clear()

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, rule_id: str) -> bool:
        return rule_id in self._rules
