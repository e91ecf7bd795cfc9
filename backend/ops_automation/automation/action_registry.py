"""Action registry mapping action kinds to their handlers."""

from abc import ABC, abstractmethod
from types import MappingProxyType
from typing import Any, Mapping

import pydantic
from pydantic import BaseModel

from ops_automation.automation.errors import RuleValidationError, UnknownAction
from ops_automation.automation.models import ActionResult, DeliveryChannel, TriggerContext


class ActionHandler(ABC):
    """A side-effecting action the engine can run.

    Subclasses declare their action kind and the pydantic model their
    configuration must validate against.
    """

    kind: str
    config_model: type[BaseModel]

    @abstractmethod
    async def execute(
        self,
        context: TriggerContext,
        config: BaseModel,
        actor: str | None,
        delivery_channel: DeliveryChannel,
    ) -> ActionResult:
        """Run the action.

        Returns:
            ActionResult on success

        Raises:
            AutomationError: On precondition or delivery failure
        """


class ActionRegistry:
    """Registry for action handlers.

    The application builds one registry at start-up and freezes it; after
    that the mapping is read-only. Tests build their own unfrozen
    registries to register extra kinds.
    """

    def __init__(self):
        """Initialize an empty registry."""
        self._handlers: dict[str, ActionHandler] = {}
        self._frozen = False

    def register(self, kind: str, handler: ActionHandler) -> None:
        """Register a handler for an action kind.

        Args:
            kind: Action kind identifier (e.g., "notify")
            handler: Handler instance

        Raises:
            RuntimeError: If the registry has been frozen

        Note:
            If a handler for the same kind already exists, it will be
            overwritten.
        """
        if self._frozen:
            raise RuntimeError(f"Action registry is frozen; cannot register '{kind}'")
        self._handlers[kind] = handler

    def freeze(self) -> "ActionRegistry":
        """Make the registry read-only."""
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def handlers(self) -> Mapping[str, ActionHandler]:
        return MappingProxyType(self._handlers)

    def lookup(self, kind: str) -> ActionHandler | None:
        """Look up the handler for an action kind.

        Returns:
            ActionHandler if registered, None otherwise
        """
        return self._handlers.get(kind)

    def is_registered(self, kind: str) -> bool:
        return kind in self._handlers

    def kinds(self) -> list[str]:
        return sorted(self._handlers)

    def validate_config(self, kind: str, raw: Any) -> BaseModel:
        """Validate an action config against the schema registered for its kind.

        Args:
            kind: Action kind
            raw: Config as a dict (or an already validated model)

        Returns:
            The validated config model

        Raises:
            RuleValidationError: If the kind is unregistered or the config is invalid
        """
        handler = self.lookup(kind)
        if handler is None:
            raise RuleValidationError(
                f"Unknown action kind '{kind}'; registered kinds: {', '.join(self.kinds())}"
            )
        if isinstance(raw, handler.config_model):
            return raw

        data = dict(raw or {})
        declared = data.setdefault("kind", kind)
        if declared != kind:
            raise RuleValidationError(
                f"Action config kind '{declared}' does not match action kind '{kind}'"
            )
        try:
            return handler.config_model.model_validate(data)
        except pydantic.ValidationError as e:
            raise RuleValidationError(f"Invalid config for action '{kind}': {e}") from None

    async def dispatch(
        self,
        kind: str,
        context: TriggerContext,
        config: Any,
        actor: str | None = None,
        delivery_channel: DeliveryChannel = DeliveryChannel.IN_APP,
    ) -> ActionResult:
        """Run the handler registered for ``kind``.

        Raises:
            UnknownAction: If no handler is registered for the kind
            AutomationError: Whatever the handler raises
        """
        handler = self.lookup(kind)
        if handler is None:
            raise UnknownAction(kind)
        validated = self.validate_config(kind, config)
        return await handler.execute(context, validated, actor, delivery_channel)

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, kind: str) -> bool:
        return kind in self._handlers
