"""
mock_status_consumer.py — Mock Read-only Consumer of Order Status Events

This module simulates a downstream consumer (analytics, shop notifications)
of the status events the print order service publishes to RabbitMQ.

Purpose:
    • Verify that every committed status change produces an event
    • Keep simple per-status counters, like a reporting consumer would

Communication Channels:
    - Input Queue: 'orders.status.updates'  ← Receives order status events
"""

import json
import logging
import os
import time
from collections import Counter

import pika

logging.basicConfig(level=logging.INFO)
RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
RABBITMQ_USER = os.environ.get("RABBITMQ_USER", "printshop")
RABBITMQ_PASSWORD = os.environ.get("RABBITMQ_PASSWORD", "printshop")
ORDER_EVENTS_QUEUE = os.environ.get("ORDER_EVENTS_QUEUE", "orders.status.updates")

status_counts = Counter()


def get_mq_connection():
    """
    Establishes and returns a connection to the RabbitMQ message broker.

    Returns:
        pika.BlockingConnection: Active connection to the RabbitMQ broker.

    Raises:
        pika.exceptions.AMQPConnectionError: If the broker is unavailable.
    """
    credentials = pika.PlainCredentials(RABBITMQ_USER, RABBITMQ_PASSWORD)
    return pika.BlockingConnection(
        pika.ConnectionParameters(host=RABBITMQ_HOST, credentials=credentials)
    )


def on_status_event(ch, method, properties, body):
    """
    Callback triggered for each message on the status queue.

    Logs the transition, updates the counters and acknowledges. Malformed
    messages are rejected without requeue (dead letter queue if configured).
    """
    try:
        data = json.loads(body)
        order_id = data["orderId"]
        status = data["status"]
    except (ValueError, KeyError) as e:
        logging.error(f"[EVENTS] Malformed status event {body!r}: {e}")
        ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
        return

    status_counts[status] += 1
    logging.info(
        f"[EVENTS][Order: {order_id}] {data.get('previousStatus')} -> {status} "
        f"by {data.get('actorRole')}. Totals: {dict(status_counts)}"
    )
    ch.basic_ack(delivery_tag=method.delivery_tag)


def main():
    """
    Starts the consumer loop, reconnecting every 5 seconds if the broker is gone.
    Stops on keyboard interrupt (Ctrl+C).
    """
    logging.info("Mock status consumer starting...")
    while True:
        try:
            connection = get_mq_connection()
            channel = connection.channel()
            channel.queue_declare(queue=ORDER_EVENTS_QUEUE, durable=True)

            logging.info("[EVENTS] Waiting for order status events.")
            channel.basic_consume(queue=ORDER_EVENTS_QUEUE, on_message_callback=on_status_event)
            channel.start_consuming()
        except pika.exceptions.AMQPConnectionError as e:
            logging.warning(f"MQ connection failed, retrying in 5s... {e}")
            time.sleep(5)
        except KeyboardInterrupt:
            break


if __name__ == '__main__':
    main()
