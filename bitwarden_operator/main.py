#!/usr/bin/env python3
"""
Bitwarden secret operator.

Keeps Kubernetes Secrets in sync with Bitwarden vault items described by
BitwardenSecret custom resources.

Usage:
    python -m bitwarden_operator.main
    bitwarden-secret-operator --log-level DEBUG --workers 8

Environment variables:
    BW_CLIENTID, BW_CLIENTSECRET, BW_PASSWORD: Vault credentials (required)
    METRICS_ENDPOINT: Bind address for /metrics and /health
    OPENTELEMETRY_ENDPOINT_URL: Optional OTLP collector
    See bitwarden_operator.config.OperatorConfig for the rest.
"""

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from typing import Any, Dict, Optional

import uvicorn

from bitwarden_operator import monitoring
from bitwarden_operator.bitwarden_cli import BitwardenCliClient, BitwardenError, SubprocessRunner
from bitwarden_operator.config import OperatorConfig
from bitwarden_operator.controller import Controller
from bitwarden_operator.kube_store import KubernetesSecretStore, SecretStore, load_kube_config
from bitwarden_operator.reconciler import ReconcileEngine
from bitwarden_operator.resync import BackgroundResync

logger = logging.getLogger(__name__)


class _MetricsServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the operator."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        pass


class BitwardenOperator:
    """
    Operator service.

    Owns the Bitwarden session and wires the reconciler, controller,
    background resync and metrics server together.
    """

    def __init__(
        self,
        config: OperatorConfig,
        session: Optional[BitwardenCliClient] = None,
        store: Optional[SecretStore] = None,
    ):
        self.config = config
        self.session = session or BitwardenCliClient(
            client_id=config.client_id,
            client_secret=config.client_secret,
            client_password=config.client_password,
            runner=SubprocessRunner(config.bw_cli_path),
            max_concurrent_fetches=config.max_concurrent_fetches,
        )
        self.store = store
        self.engine: Optional[ReconcileEngine] = None
        self.controller: Optional[Controller] = None
        self.resync = BackgroundResync(
            self.session, interval=config.sync_interval, relogin=config.auto_relogin
        )
        self._metrics_server: Optional[_MetricsServer] = None
        self._metrics_task: Optional[asyncio.Task] = None
        self._running = False

    async def bootstrap_session(self) -> None:
        """
        Log in, unlock and sync once before any reconciliation starts.

        Raises:
            BitwardenError: Any failure here is fatal for the process.
        """
        await self.session.login()
        await self.session.unlock()
        await self.session.sync()

    async def start(self) -> None:
        """Start the operator. Returns once all background tasks are running."""
        if self._running:
            return
        self._running = True

        await self.bootstrap_session()

        if self.store is None:
            load_kube_config()
            self.store = KubernetesSecretStore()

        self.engine = ReconcileEngine(
            session=self.session,
            store=self.store,
            ttl=self.config.refresh_ttl,
            fresh_requeue=self.config.fresh_requeue,
            retry_policy=self.config.retry_policy(),
        )
        self.controller = Controller(self.engine, self.store, workers=self.config.workers)

        self.resync.start()
        await self.controller.start()
        await self._start_metrics_server()

    async def _start_metrics_server(self) -> None:
        host, port = self.config.metrics_address()
        app = monitoring.create_app(status_provider=self.session.get_status)
        self._metrics_server = _MetricsServer(
            uvicorn.Config(app, host=host, port=port, log_level="warning", access_log=False)
        )
        self._metrics_task = asyncio.create_task(self._metrics_server.serve())
        logger.info("HTTP /metrics server listening on: %s:%d", host, port)

    async def stop(self) -> None:
        """Stop everything. In-flight passes are abandoned."""
        if not self._running:
            return
        logger.info("Stopping operator...")
        self._running = False

        if self.controller:
            await self.controller.stop()
        await self.resync.stop()

        if self._metrics_server:
            self._metrics_server.should_exit = True
        if self._metrics_task:
            with contextlib.suppress(asyncio.CancelledError):
                await self._metrics_task

        close = getattr(self.store, "close", None)
        if close is not None:
            await close()

        logger.info("Operator shutdown complete")

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "session": self.session.get_status(),
            "config": self.config.to_dict(),
        }


def setup_logging(level: str = "INFO", format_str: Optional[str] = None) -> None:
    """Configure logging."""
    log_level = getattr(logging, level.upper(), logging.INFO)
    log_format = format_str or "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level, format=log_format, handlers=[logging.StreamHandler(sys.stdout)]
    )

    # The kubernetes client logs every request at DEBUG
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Sync Bitwarden vault items into Kubernetes Secrets",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    export BW_CLIENTID=user.xxxx BW_CLIENTSECRET=xxxx BW_PASSWORD=xxxx
    %(prog)s
    %(prog)s --metrics-endpoint 0.0.0.0:3001 --workers 8
        """,
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    parser.add_argument("--metrics-endpoint", help="host:port for /metrics and /health")

    parser.add_argument("--workers", type=int, help="Concurrent reconciliation workers")

    parser.add_argument("--bw-cli-path", help="Path to the bw binary")

    parser.add_argument(
        "--no-auto-relogin",
        action="store_true",
        help="Do not unlock again when the session is flagged for relogin",
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> OperatorConfig:
    """Build configuration from environment and arguments."""
    config = OperatorConfig.from_env()

    if args.log_level:
        config.log_level = args.log_level
    if args.metrics_endpoint:
        config.metrics_endpoint = args.metrics_endpoint
    if args.workers is not None:
        config.workers = args.workers
    if args.bw_cli_path:
        config.bw_cli_path = args.bw_cli_path
    if args.no_auto_relogin:
        config.auto_relogin = False

    return config


async def main_async(operator: BitwardenOperator) -> int:
    """Async main function."""
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await operator.start()
    except BitwardenError as e:
        logger.error(f"Bitwarden session setup failed: {e}")
        await operator.stop()
        return 1

    await stop_event.wait()
    await operator.stop()
    return 0


def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    config = build_config(args)

    setup_logging(level=config.log_level, format_str=config.log_format)

    errors = config.validate()
    if errors:
        logger.error("Configuration errors:")
        for error in errors:
            logger.error(f"  - {error}")
        return 1

    monitoring.setup_tracing(config.otlp_endpoint)
    logger.info(f"Starting Bitwarden secret operator: {config.to_dict()}")

    operator = BitwardenOperator(config)

    try:
        return asyncio.run(main_async(operator))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
