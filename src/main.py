"""
Main entry point for the Port Forwarding Operator.

Wires the UniFi rule store, the forwarding reconciler and the Kubernetes
service source into the service controller and runs it until signalled.
"""

import asyncio
import logging
import signal
from typing import Optional

from config import Config, get_config
from controller import ControllerConfig, ServiceController
from forwarding.reconciler import Reconciler
from sources.kubernetes import KubernetesServiceSource
from stores.unifi import UniFiRuleStore

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


class Application:
    """Main application that orchestrates the controller and its backends."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.store: Optional[UniFiRuleStore] = None
        self.source: Optional[KubernetesServiceSource] = None
        self.controller: Optional[ServiceController] = None
        self.running = False

    def initialize(self):
        """Initialize all components."""
        logger.info("Initializing Port Forwarding Operator")

        router = self.config.router
        self.store = UniFiRuleStore(
            controller_url=router.url,
            username=router.username,
            password=router.password,
            default_site=router.default_site,
            site_option=router.site_option,
            verify_ssl=router.verify_ssl,
            timeout=router.timeout,
        )
        logger.info(f"Using UniFi controller at {router.url}")

        kube = self.config.kubernetes
        self.source = KubernetesServiceSource(
            api_url=kube.api_url,
            token_path=kube.token_path,
            ca_path=kube.ca_path,
            namespace=kube.namespace,
        )

        reconciler = Reconciler(
            rule_prefix=self.config.forwarding.rule_prefix,
            store=self.store,
        )

        ctrl_config = self.config.controller
        controller_config = ControllerConfig(
            reconcile_interval=ctrl_config.reconcile_interval,
            max_concurrent_reconciles=ctrl_config.max_concurrent_reconciles,
            backoff_base_delay=ctrl_config.backoff_base_delay,
            backoff_max_delay=ctrl_config.backoff_max_delay,
            backoff_jitter_factor=ctrl_config.backoff_jitter_factor,
        )

        self.controller = ServiceController(
            source=self.source,
            reconciler=reconciler,
            annotations=self.config.annotations,
            config=controller_config,
        )

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            self.initialize()

        self.running = True
        logger.info("Starting Port Forwarding Operator")

        try:
            await self.controller.start()
        except asyncio.CancelledError:
            logger.info("Controller task cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping Port Forwarding Operator")
        self.running = False

        if self.controller:
            await self.controller.stop()

        if self.source:
            await self.source.close()

        if self.store:
            await self.store.close()

        logger.info("Port Forwarding Operator stopped")


async def main():
    """Main entry point."""
    config = get_config()
    configure_logging(config.controller.log_level)

    app = Application(config)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


if __name__ == "__main__":
    asyncio.run(main())
