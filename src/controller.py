"""
Service Controller - Main reconciliation loop.

Similar to Kubernetes controllers, periodically lists Services and reconciles
the router's port forwarding rules for every eligible one. Reconciliations of
the same router partition are serialised; different partitions run
concurrently up to ``max_concurrent_reconciles``.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from config import AnnotationConfig
from forwarding.address import Address, ScopeKey
from forwarding.reconciler import Reconciler
from sources import service as svc
from sources.base import ServiceSource

logger = logging.getLogger(__name__)


@dataclass
class ControllerConfig:
    """Configuration for the controller."""

    reconcile_interval: int = 60
    max_concurrent_reconciles: int = 5

    # Exponential backoff configuration
    backoff_base_delay: int = 10  # base delay in seconds
    backoff_max_delay: int = 600  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter


@dataclass
class ServiceResult:
    """Outcome of reconciling one Service."""

    service: str
    success: bool = False
    action: str = "skipped"  # "applied", "removed" or "skipped"
    message: str = ""


class ServiceController:
    """
    Controller that keeps router rules in line with annotated Services.

    Eligible Services get their rules created and a finalizer added; Services
    being deleted (or no longer eligible) get their rules removed before the
    finalizer is released.
    """

    def __init__(
        self,
        source: ServiceSource,
        reconciler: Reconciler,
        annotations: Optional[AnnotationConfig] = None,
        config: Optional[ControllerConfig] = None,
    ):
        self.source = source
        self.reconciler = reconciler
        self.annotations = annotations or AnnotationConfig()
        self.config = config or ControllerConfig()
        self.semaphore = asyncio.Semaphore(self.config.max_concurrent_reconciles)
        self.running = False

        self._shutdown_event = asyncio.Event()
        self._partition_locks: Dict[ScopeKey, asyncio.Lock] = {}
        self._failure_counts: Dict[str, int] = {}
        self._retry_at: Dict[str, float] = {}

    async def start(self):
        """Start the controller reconciliation loop."""
        logger.info("Starting Service Controller")
        self.running = True
        self._shutdown_event.clear()
        await self._reconciliation_loop()

    async def stop(self):
        """Stop the controller gracefully."""
        logger.info("Stopping Service Controller")
        self.running = False
        self._shutdown_event.set()

    async def _reconciliation_loop(self):
        """Main reconciliation loop - lists Services and reconciles each one."""
        while self.running:
            try:
                await self.reconcile_all()
            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self.config.reconcile_interval
                )
            except asyncio.TimeoutError:
                pass

    async def reconcile_all(self) -> List[ServiceResult]:
        """
        Reconcile every Service that is due.

        Services still backing off from an earlier failure are skipped until
        their retry time.

        Returns:
            One ServiceResult per Service that was attempted.
        """
        services = await self.source.list_services()
        self._forget_missing({svc.service_key(s) for s in services})
        now = time.monotonic()
        due = [
            s
            for s in services
            if self._retry_at.get(svc.service_key(s), 0) <= now
        ]

        if due:
            logger.debug(f"Reconciling {len(due)} of {len(services)} services")

        return list(await asyncio.gather(*(self._reconcile_guarded(s) for s in due)))

    async def _reconcile_guarded(self, service: Dict[str, Any]) -> ServiceResult:
        """Reconcile one Service, turning failures into a scheduled retry."""
        key = svc.service_key(service)
        async with self.semaphore:
            try:
                result = await self.reconcile_service(service)
            except Exception as e:
                delay = self._schedule_retry(key)
                logger.error(
                    f"Failed to reconcile {key}, retrying in {delay:.0f}s: {e}",
                    exc_info=True,
                )
                return ServiceResult(service=key, success=False, message=str(e))

        self._failure_counts.pop(key, None)
        self._retry_at.pop(key, None)
        return result

    async def reconcile_service(self, service: Dict[str, Any]) -> ServiceResult:
        """
        Reconcile the router rules of a single Service.

        The addresses applied for a Service are recorded in an annotation
        next to the finalizer, so rules can still be found after the Service
        lost its IP, options or eligibility. Errors from the reconciler or
        the source propagate to the caller.
        """
        key = svc.service_key(service)
        eligible = svc.is_eligible(service, self.annotations)
        tracked = svc.has_finalizer(service, self.annotations.finalizer)

        if not eligible and not tracked:
            return ServiceResult(service=key, success=True)

        recorded = svc.recorded_addresses(service, self.annotations) if tracked else None

        if eligible and not svc.is_deleting(service):
            return await self._apply(service, key, tracked, recorded)

        if not tracked:
            return ServiceResult(service=key, success=True)

        return await self._remove(service, key, recorded)

    async def _apply(
        self,
        service: Dict[str, Any],
        key: str,
        tracked: bool,
        recorded: Optional[List[Address]],
    ) -> ServiceResult:
        if not svc.target_ip(service):
            logger.warning(f"Service {key} has no external IP yet, rules left unchanged")
            return ServiceResult(service=key, success=True, message="no external IP")

        addresses = svc.addresses_from_service(service, self.annotations)
        scope = svc.options_from_service(service, self.annotations)

        # Rules applied under other options are not seen by create_addresses
        if recorded and (not addresses or recorded[0].options != scope):
            async with self._partition_lock(recorded[0].options):
                await self.reconciler.delete_addresses(recorded)
            logger.info(f"Removed rules of {key} from partition {recorded[0].options}")

        # Record before creating so a rule never exists without its record
        applied = svc.encode_addresses(addresses)
        if not tracked or svc.recorded_value(service, self.annotations) != applied:
            await self.source.add_finalizer(
                service, self.annotations.finalizer, {self.annotations.applied_key: applied}
            )

        async with self._partition_lock(scope):
            summary = await self.reconciler.create_addresses(addresses)

        if summary.has_changes:
            logger.info(
                f"Reconciled {key}: {len(summary.deleted)} deleted, "
                f"{len(summary.created)} created"
            )
        return ServiceResult(service=key, success=True, action="applied")

    async def _remove(
        self,
        service: Dict[str, Any],
        key: str,
        recorded: Optional[List[Address]],
    ) -> ServiceResult:
        addresses = recorded
        if addresses is None:
            # Finalizer without a record: fall back to the current spec
            addresses = svc.addresses_from_service(service, self.annotations)
            if any(not a.ip for a in addresses):
                logger.warning(
                    f"Cannot tell which rules belong to {key}, keeping its finalizer"
                )
                return ServiceResult(
                    service=key, success=False, message="applied addresses unknown"
                )

        scope = addresses[0].options if addresses else ScopeKey()
        async with self._partition_lock(scope):
            summary = await self.reconciler.delete_addresses(addresses)

        await self.source.remove_finalizer(
            service, self.annotations.finalizer, {self.annotations.applied_key: None}
        )
        logger.info(f"Removed {len(summary.deleted)} port forwarding rules for {key}")
        return ServiceResult(service=key, success=True, action="removed")

    def _forget_missing(self, keys: Set[str]) -> None:
        """Drop retry state of Services that no longer exist."""
        for key in list(self._failure_counts):
            if key not in keys:
                del self._failure_counts[key]
        for key in list(self._retry_at):
            if key not in keys:
                del self._retry_at[key]

    def _partition_lock(self, scope: ScopeKey) -> asyncio.Lock:
        if scope not in self._partition_locks:
            self._partition_locks[scope] = asyncio.Lock()
        return self._partition_locks[scope]

    def _schedule_retry(self, key: str) -> float:
        failures = self._failure_counts.get(key, 0) + 1
        self._failure_counts[key] = failures
        delay = self._backoff_delay(failures)
        self._retry_at[key] = time.monotonic() + delay
        return delay

    def _backoff_delay(self, failures: int) -> float:
        """Exponential backoff: base * 2^(failures-1), capped, with jitter."""
        delay = min(
            self.config.backoff_base_delay * (2 ** (failures - 1)),
            self.config.backoff_max_delay,
        )
        jitter = delay * self.config.backoff_jitter_factor
        return max(0.0, delay + random.uniform(-jitter, jitter))
