"""
Port-forwarding rule model and naming.

The reconciliation engine lives in ``forwarding.reconciler``; it is not
re-exported here because rule stores import this package.
"""

from forwarding.address import ANY_SOURCE, Address, ScopeKey, same_rule
from forwarding.naming import qualified_name, qualify, with_port_suffix

__all__ = [
    "ANY_SOURCE",
    "Address",
    "ScopeKey",
    "same_rule",
    "qualified_name",
    "qualify",
    "with_port_suffix",
]
