"""
Forwarding Reconciler - Converges router rules toward a desired address set.

Similar to a Kubernetes controller's reconcile step: every call re-lists the
router state for one partition, diffs it against the desired addresses and
issues the deletes and creates needed to converge. Nothing is cached between
calls, so a failed call is retried simply by calling again.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, List, Optional, Sequence

from forwarding.address import ANY_SOURCE, Address, ScopeKey, same_rule
from forwarding.naming import qualify, with_port_suffix
from stores.base import RuleStore

logger = logging.getLogger(__name__)


class InconsistentScopeError(ValueError):
    """Raised when the addresses of one call do not share the same options."""


class ChangeLogger(ABC):
    """Receives one notification per rule mutation, before it is issued."""

    @abstractmethod
    def info(self, msg: str, **fields: Any) -> None:
        pass


class LoggingChangeLogger(ChangeLogger):
    """ChangeLogger that writes to the standard logging module."""

    def __init__(self, log: logging.Logger = logger):
        self._log = log

    def info(self, msg: str, **fields: Any) -> None:
        details = " ".join(f"{k}={v}" for k, v in fields.items())
        self._log.info(f"{msg} {details}" if details else msg)


@dataclass
class ReconcileSummary:
    """Rules actually written by a reconcile call."""

    deleted: List[Address] = field(default_factory=list)
    created: List[Address] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.deleted or self.created)


class Reconciler:
    """
    Diff engine between desired addresses and a RuleStore.

    Holds no mutable state; callers must serialise calls that target the same
    partition.
    """

    def __init__(
        self,
        rule_prefix: str,
        store: RuleStore,
        change_logger: Optional[ChangeLogger] = None,
    ):
        self.rule_prefix = rule_prefix
        self.store = store
        self.change_logger = change_logger or LoggingChangeLogger()

    async def create_addresses(self, addresses: Sequence[Address]) -> ReconcileSummary:
        """
        Converge the partition toward ``addresses``.

        Stale rules (carrying a desired address's name prefix but no longer
        matching any desired record) are deleted first, then missing rules
        are created. The first store error aborts the call and is re-raised
        unchanged; already applied changes are kept.

        Args:
            addresses: Desired addresses, all with the same options.

        Returns:
            ReconcileSummary of the rules deleted and created.

        Raises:
            InconsistentScopeError: If the addresses carry different options.
        """
        scope = self._list_scope(addresses)
        desired = [qualify(a, self.rule_prefix) for a in addresses]
        existing = await self._list_existing(scope)

        summary = ReconcileSummary()
        for address in self._stale_addresses(desired, existing):
            self._log_change("deleting stale port forwarding rule", address)
            await self.store.delete_rule(address)
            summary.deleted.append(address)

        for address in self._missing_addresses(desired, existing):
            self._log_change("adding port forwarding rule", address)
            await self.store.create_rule(address)
            summary.created.append(address)

        return summary

    async def delete_addresses(self, addresses: Sequence[Address]) -> ReconcileSummary:
        """
        Remove the rules belonging to ``addresses``.

        Addresses with no matching rule are skipped, so repeating a delete
        is harmless.

        Raises:
            InconsistentScopeError: If the addresses carry different options.
        """
        scope = self._list_scope(addresses)
        desired = [qualify(a, self.rule_prefix) for a in addresses]
        existing = await self._list_existing(scope)

        summary = ReconcileSummary()
        for address in self._addresses_to_delete(desired, existing):
            self._log_change("deleting port forwarding rule", address)
            await self.store.delete_rule(address)
            summary.deleted.append(address)

        return summary

    def _list_scope(self, addresses: Sequence[Address]) -> ScopeKey:
        if not addresses:
            return ScopeKey()
        scope = addresses[0].options
        for address in addresses[1:]:
            if address.options != scope:
                raise InconsistentScopeError(
                    f"All addresses must share the same options: "
                    f"'{address.name}' has {address.options}, expected {scope}"
                )
        return scope

    async def _list_existing(self, scope: ScopeKey) -> List[Address]:
        existing = await self.store.list_rules(scope)
        return [
            replace(a, source_range="") if a.source_range == ANY_SOURCE else a
            for a in existing
        ]

    def _stale_addresses(
        self, desired: List[Address], existing: List[Address]
    ) -> List[Address]:
        stale = []
        for rule in existing:
            candidates = [d for d in desired if rule.name.startswith(d.name)]
            if not candidates:
                # Not ours, or not managed by this call
                continue
            if not any(same_rule(rule, with_port_suffix(d)) for d in candidates):
                stale.append(rule)
        return stale

    def _missing_addresses(
        self, desired: List[Address], existing: List[Address]
    ) -> List[Address]:
        missing = []
        for address in desired:
            suffixed = with_port_suffix(address)
            if not any(same_rule(suffixed, rule) for rule in existing):
                missing.append(suffixed)
        return missing

    def _addresses_to_delete(
        self, desired: List[Address], existing: List[Address]
    ) -> List[Address]:
        to_delete = []
        for address in desired:
            suffixed = with_port_suffix(address)
            to_delete.extend(rule for rule in existing if same_rule(suffixed, rule))
        return to_delete

    def _log_change(self, msg: str, address: Address) -> None:
        self.change_logger.info(
            msg, name=address.name, port=address.port, ip=address.ip
        )
