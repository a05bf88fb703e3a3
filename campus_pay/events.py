import json
import logging

import pika

from campus_pay.models import SUCCESS, Transaction

EXCHANGE = "ums_events"

logger = logging.getLogger("payment-service.events")


def payment_event(transaction: Transaction) -> tuple:
    """Routing key and body announcing that a transaction reached a terminal state."""
    confirmed = transaction.status == SUCCESS
    event = {
        "type": "PaymentConfirmed" if confirmed else "PaymentFailed",
        "payload": {
            "payment_id": transaction.id,
            "student_id": transaction.student_id,
            "provider_reference": transaction.provider_reference,
            "amount": transaction.amount,
            "currency": transaction.currency,
            "semester": transaction.semester,
            "academic_year": transaction.academic_year,
            "paid_at": transaction.paid_at.isoformat() if transaction.paid_at else None,
        },
    }
    routing_key = "payment.events.confirmed" if confirmed else "payment.events.failed"
    return routing_key, event


class EventPublisher:
    """Best-effort publisher; a broker outage never affects reconciliation."""

    def __init__(self, rabbitmq_url: str):
        self.rabbitmq_url = rabbitmq_url

    @property
    def enabled(self) -> bool:
        return bool(self.rabbitmq_url)

    def publish(self, routing_key: str, event: dict) -> bool:
        if not self.enabled:
            logger.debug("No broker configured; dropping %s", event.get("type"))
            return False
        connection = None
        try:
            params = pika.URLParameters(self.rabbitmq_url)
            connection = pika.BlockingConnection(params)
            channel = connection.channel()
            channel.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)
            body = json.dumps(event)
            channel.basic_publish(
                exchange=EXCHANGE,
                routing_key=routing_key,
                body=body,
                properties=pika.BasicProperties(content_type="application/json", delivery_mode=2),
            )
        except (pika.exceptions.AMQPError, OSError):
            logger.exception("Error publishing %s to %s", event.get("type"), routing_key)
            return False
        finally:
            if connection is not None and connection.is_open:
                connection.close()
        logger.info("Published %s on %s", event.get("type"), routing_key)
        return True
