"""
Rule Store Base - Abstract interface for router rule backends.

A rule store lists, creates and deletes port-forwarding rules on a router,
scoped by a partition key. The reconciler depends only on this interface;
the default shipped implementation talks to a UniFi controller.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from forwarding.address import Address, ScopeKey


class RuleStoreError(Exception):
    """Base class for errors raised by rule stores."""

    def __init__(self, message: str, address: Optional[Address] = None):
        self.message = message
        self.address = address
        super().__init__(message)


class RuleListError(RuleStoreError):
    """Listing rules for a partition failed. Nothing was changed."""


class RuleCreateError(RuleStoreError):
    """Creating a single rule failed."""


class RuleDeleteError(RuleStoreError):
    """Deleting a single rule failed."""


class MalformedRuleError(RuleStoreError):
    """A router-reported rule could not be parsed into an Address."""


class RuleStore(ABC):
    """
    Abstract base class for rule stores.

    Implementations never retry on behalf of the caller beyond their own
    session handling, and raise the RuleStoreError subclass matching the
    failed operation.
    """

    @abstractmethod
    async def list_rules(self, scope: ScopeKey) -> List[Address]:
        """
        List every rule visible under ``scope``.

        Each returned Address carries ``options == scope``. Ordering is not
        guaranteed.

        Args:
            scope: Partition to list.

        Returns:
            The rules currently on the router.

        Raises:
            RuleListError: If the list round-trip failed.
            MalformedRuleError: If a reported rule could not be parsed.
        """
        pass

    @abstractmethod
    async def create_rule(self, address: Address) -> None:
        """
        Create one fully-qualified rule.

        Raises:
            RuleCreateError: If the router rejected or never received the call.
        """
        pass

    @abstractmethod
    async def delete_rule(self, address: Address) -> None:
        """
        Delete one fully-qualified rule. Deleting an absent rule is a no-op.

        Raises:
            RuleDeleteError: If the router rejected or never received the call.
        """
        pass

    async def close(self) -> None:
        """Release any connections held by the store."""
        pass
