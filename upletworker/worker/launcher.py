"""Entry point for a compute worker process."""

import asyncio
import sys
import uuid

from upletworker.broker import Consumer, broker_from_settings
from upletworker.config import Settings, settings, setup_logging
from upletworker.ledger import ledger_from_settings
from upletworker.sandbox import sandbox_from_settings
from upletworker.storage import blobstore_from_settings

from .compute_worker import ComputeWorker


def build_worker(config: Settings) -> ComputeWorker:
    """Assemble a worker from the backends selected in ``config``."""
    worker_id = uuid.UUID(config.worker_id)
    consumer = Consumer(
        broker_from_settings(config),
        name=str(worker_id),
        poll_timeout=config.poll_timeout,
        drain_timeout=config.drain_timeout,
        report_retries=config.report_failure_retries,
        report_backoff=config.report_failure_backoff,
        report_backoff_cap=config.report_failure_backoff_cap,
    )
    return ComputeWorker(
        worker_id=worker_id,
        ledger=ledger_from_settings(config),
        blobstore=blobstore_from_settings(config),
        sandbox=sandbox_from_settings(config),
        consumer=consumer,
        settings=config,
    )


async def main():
    """Main entry point for compute workers."""
    logger = setup_logging("worker")
    logger.info(
        f"Worker {settings.worker_id}: ledger={settings.ledger_backend} broker={settings.broker_backend} "
        f"blobstore={settings.blobstore_backend} sandbox={settings.sandbox_backend}"
    )

    worker = build_worker(settings)
    try:
        await worker.start()
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.error(f"Compute worker error: {e}")
        sys.exit(1)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
