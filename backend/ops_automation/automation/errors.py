"""Automation error hierarchy.

All automation-specific exceptions inherit from AutomationError. Only
RuleValidationError and RuleNotFound ever reach a caller of the management
surface; everything an action raises is turned into an error log entry by
the dispatcher.
"""


class AutomationError(Exception):
    """Base exception for all automation errors."""


class RuleValidationError(AutomationError):
    """Raised when a rule definition or action config is malformed.

    Named RuleValidationError (not ValidationError) to avoid collision
    with pydantic.ValidationError.
    """


class RuleNotFound(AutomationError):
    """Raised when a rule id lookup fails."""

    def __init__(self, rule_id: str) -> None:
        self.rule_id = rule_id
        super().__init__(f"Rule not found: {rule_id}")


class UnknownAction(AutomationError):
    """Raised when no handler is registered for an action kind."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(f"Unknown action: {kind}")


class MissingField(AutomationError):
    """Raised when an action needs a context field that is absent."""

    def __init__(self, field: str, action: str) -> None:
        self.field = field
        self.action = action
        super().__init__(f"MissingField: {action} requires '{field}'")


class EmptyList(AutomationError):
    """Raised when an action needs a non-empty list and got none."""

    def __init__(self, field: str, action: str) -> None:
        self.field = field
        self.action = action
        super().__init__(f"EmptyList: {action} requires at least one item in '{field}'")


class EntityNotFound(AutomationError):
    """Raised when an action targets an entity that does not exist."""

    def __init__(self, entity_id: str, kind: str | None = None) -> None:
        self.entity_id = entity_id
        self.kind = kind
        label = f"{kind} {entity_id}" if kind else entity_id
        super().__init__(f"EntityNotFound: {label}")


class PartialFailure(AutomationError):
    """Raised when some items of a multi-write action failed.

    The message names every failed item; succeeded items stay written.
    """

    def __init__(self, action: str, succeeded: list[str], failed: list[tuple[str, str]]) -> None:
        self.action = action
        self.succeeded = succeeded
        self.failed = failed
        details = "; ".join(f"'{item}': {reason}" for item, reason in failed)
        super().__init__(
            f"PartialFailure: {action} wrote {len(succeeded)} of "
            f"{len(succeeded) + len(failed)} item(s); failed {details}"
        )


class TransientIOError(AutomationError):
    """Raised when the entity store or a delivery channel is unreachable.

    Not retried within the same dispatch; the next trigger occurrence is
    the retry.
    """
