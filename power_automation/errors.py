"""Exceptions raised at the rule CRUD boundary."""

from typing import List, Optional


class RuleValidationError(ValueError):
    """A rule definition is malformed (bad condition/action shape or range)."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []

    def __str__(self) -> str:
        if not self.errors:
            return self.args[0]
        return f"{self.args[0]}: " + "; ".join(self.errors)


class RuleNotFoundError(LookupError):
    """No rule exists with the requested id."""

    def __init__(self, rule_id):
        super().__init__(f"Rule not found: {rule_id}")
        self.rule_id = rule_id
