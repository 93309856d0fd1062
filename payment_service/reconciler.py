"""Reconciliation sweep for payment attempts left pending too long.

Meant to be run periodically by an external scheduler::

    python -m payment_service.reconciler
"""

import asyncio

import structlog

from payment_service import messaging
from payment_service.config import Settings
from payment_service.database import Database
from payment_service.gateway import StripeGatewayClient
from payment_service.logging_config import configure_logging
from payment_service.state_machine import PaymentStateMachine

log = structlog.get_logger(__name__)


async def run_sweep(settings: Settings, limit: int = 100) -> int:
    database = Database(settings.database_url)
    publisher = None
    if settings.publish_events:
        await messaging.setup_rabbitmq(settings.rabbitmq_url)
        publisher = messaging.publish_event
    try:
        machine = PaymentStateMachine(
            database.session_factory,
            StripeGatewayClient(settings),
            settings,
            publisher=publisher,
        )
        return await machine.sweep_pending(limit=limit)
    finally:
        await messaging.close_rabbitmq()
        await database.dispose()


def main():
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    resolved = asyncio.run(run_sweep(settings))
    log.info("reconciler_finished", resolved=resolved)


if __name__ == "__main__":
    main()
