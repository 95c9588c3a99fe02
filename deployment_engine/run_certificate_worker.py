# deployment_engine/run_certificate_worker.py
"""Certificate worker - issues and renews TLS certificates on a fixed schedule."""

import logging
import signal
import sys
import threading
from typing import Callable, Optional

from deployment_engine.core.errors import DeploymentEngineError

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


class CertificateRenewalWorker:
    """
    Certificate worker - runs one renewal pass per interval.

    Separate process that:
    - Re-reads the topology before every pass (domains may have been added)
    - Issues missing certificates and renews those close to expiry
    - Reloads the proxy once per pass when something changed
    - Never retries faster than the interval; the next pass is the retry
    """

    def __init__(self, container, interval_seconds: float = 12 * 3600, reload_topology: bool = True):
        """
        Initialize certificate worker.

        Args:
            container: Wired engine container
            interval_seconds: Time between passes (default twice daily)
            reload_topology: Re-read the topology file before each pass
        """
        self.container = container
        self.interval_seconds = interval_seconds
        self.reload_topology = reload_topology
        self._stop_event = threading.Event()
        self.passes = 0

        logger.info("Certificate Worker initialized")
        logger.info(f"Interval: {interval_seconds}s")

    def start(self, max_passes: Optional[int] = None, install_signal_handlers: bool = True):
        """Start the renewal loop."""
        logger.info("=" * 80)
        logger.info("🔐 CERTIFICATE WORKER STARTED")
        logger.info("=" * 80)
        logger.info(f"Interval: {self.interval_seconds}s")
        logger.info(f"Renewal threshold: {self.container.settings.renewal_threshold_days} days")
        logger.info("Press Ctrl+C to stop")
        logger.info("=" * 80)

        # Register signal handlers
        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)

        # Main loop
        while not self._stop_event.is_set():
            try:
                self._renewal_cycle()
            except DeploymentEngineError as e:
                logger.error(f"[certs] pass failed: {e}")
            except Exception as e:
                logger.error(f"Error in renewal cycle: {e}", exc_info=True)

            self.passes += 1
            if max_passes is not None and self.passes >= max_passes:
                break

            # Wait before next cycle; a stop signal ends the wait early
            self._stop_event.wait(self.interval_seconds)

        logger.info("Certificate Worker stopped")

    def stop(self):
        self._stop_event.set()

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, stopping...")
        self.stop()

    def _renewal_cycle(self):
        """Single renewal pass."""
        if self.reload_topology:
            self.container.reload_topology()

        result = self.container.service.certificate_pass()

        if result.failed:
            logger.warning(
                f"[certs] {len(result.failed)} domain(s) failed, next attempt in "
                f"{self.interval_seconds}s: {', '.join(sorted(result.failed))}"
            )


def main(container_factory: Optional[Callable] = None):
    """Main entry point."""
    from deployment_engine.container import build_container

    logger.info("Starting Certificate Worker")

    try:
        container = (container_factory or build_container)()
        worker = CertificateRenewalWorker(
            container,
            interval_seconds=container.settings.renewal_interval_hours * 3600,
        )
        worker.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
