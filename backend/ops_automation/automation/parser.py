"""Condition text parser using Lark."""

from pathlib import Path
from typing import Any

from lark import Lark, Transformer, Token
from lark.exceptions import LarkError, VisitError

from ops_automation.automation.errors import RuleValidationError

_OPERATORS = {
    "==": "eq",
    "!=": "neq",
    ">": "gt",
    "<": "lt",
    ">=": "gte",
    "<=": "lte",
}


class _DisjunctionFound(Exception):
    pass


class ConditionTransformer(Transformer):
    """Transform the Lark parse tree into structured condition dicts."""

    def FIELD(self, token: Token) -> str:
        return str(token)

    def OP(self, token: Token) -> str:
        return _OPERATORS[str(token)]

    def DIRECTION(self, token: Token) -> str:
        return str(token).lower().replace("_", "-")

    def DURATION(self, token: Token) -> str:
        return str(token)

    def string(self, items):
        s = str(items[0])
        return s[1:-1].replace('\\"', '"').replace("\\\\", "\\")

    def number(self, items):
        s = str(items[0])
        return float(s) if "." in s or "e" in s.lower() else int(s)

    def true(self, items):
        return True

    def false(self, items):
        return False

    def null(self, items):
        return None

    def comparison(self, items):
        field, operator, value = items
        return {"type": "compare", "field": field, "operator": operator, "value": value}

    def temporal(self, items):
        field, direction, threshold = items
        return {"type": "temporal", "field": field, "direction": direction, "threshold": threshold}

    def from_clause(self, items):
        return ("from", items[0])

    def to_clause(self, items):
        return ("to", items[0])

    def changed(self, items):
        result = {"type": "changed", "field": items[0]}
        for key, value in items[1:]:
            result[key] = value
        return result

    def interval(self, items):
        return {"type": "interval", "every": items[0]}

    def cron(self, items):
        return {"type": "interval", "cron": self.string(items)}

    def condition(self, items):
        if any(isinstance(item, Token) and item.type == "OR" for item in items):
            raise _DisjunctionFound()
        if len(items) == 1:
            return items[0]
        return {"type": "all", "conditions": list(items)}


class ConditionParser:
    """Parser for condition text."""

    _lark: Lark | None = None

    def __init__(self):
        if ConditionParser._lark is None:
            grammar_path = Path(__file__).parent / "grammar.lark"
            with open(grammar_path) as f:
                grammar = f.read()
            ConditionParser._lark = Lark(
                grammar, parser="lalr", transformer=ConditionTransformer(), start="start"
            )
        self.lark = ConditionParser._lark

    def parse(self, text: str) -> dict[str, Any]:
        """Parse condition text into its structured dict form.

        Raises:
            RuleValidationError: If the text does not parse or uses OR
        """
        try:
            return self.lark.parse(text)
        except _DisjunctionFound:
            raise RuleValidationError(
                "Disjunction (OR) is not supported in trigger conditions; create one rule per alternative"
            ) from None
        except VisitError as e:
            if isinstance(e.orig_exc, _DisjunctionFound):
                raise RuleValidationError(
                    "Disjunction (OR) is not supported in trigger conditions; create one rule per alternative"
                ) from None
            raise RuleValidationError(f"Invalid condition: {e.orig_exc}") from None
        except LarkError as e:
            raise RuleValidationError(f"Invalid condition text: {e}") from None
