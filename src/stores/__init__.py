"""
Rule stores for the port-forwarding operator.

A rule store is the router-facing side of reconciliation: it lists,
creates and deletes rules for one partition at a time.
"""

from stores.base import (
    MalformedRuleError,
    RuleCreateError,
    RuleDeleteError,
    RuleListError,
    RuleStore,
    RuleStoreError,
)

__all__ = [
    "MalformedRuleError",
    "RuleCreateError",
    "RuleDeleteError",
    "RuleListError",
    "RuleStore",
    "RuleStoreError",
]
