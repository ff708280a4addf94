"""
This module provides communication clients for external systems used by the print order service:
- Payment Gateway (REST API)
- Order status event queue (RabbitMQ)
Each class encapsulates its protocol logic, error handling, and connection management.
"""

import json
import logging
import time
import uuid

import httpx
import pika

from . import config
from .errors import UpstreamUnavailable

log = logging.getLogger(__name__)


# --- Payment Gateway Client (REST) ---
class PaymentGatewayClient:
    """
    Client for the payment gateway REST API.
    Creates gateway-side orders (payment intents) that the client-side checkout completes.
    """
    def __init__(self, base_url=None, key_id=None, key_secret=None, transport=None):
        """
        Initializes the HTTP client with basic auth and timeout configuration.

        Args:
            base_url (str): Gateway API root, defaults to PAYMENT_GATEWAY_URL.
            key_id (str): Public key id, also handed to the browser checkout.
            key_secret (str): Server-held secret for API auth.
            transport (httpx.BaseTransport): Optional transport override (tests).
        """
        self.key_id = key_id or config.GATEWAY_KEY_ID
        timeout_config = httpx.Timeout(5.0, read=8.0)
        self.client = httpx.Client(
            base_url=base_url or config.PAYMENT_GATEWAY_URL,
            auth=(self.key_id, key_secret or config.GATEWAY_KEY_SECRET),
            timeout=timeout_config,
            transport=transport,
        )

    def close(self):
        self.client.close()

    @property
    def public_key(self):
        return self.key_id

    def create_intent(self, order_id: str, amount_minor_units: int, currency: str) -> str:
        """
        Creates a gateway-side order for the given amount.
        Args:
            order_id (str): Our order id, sent as the gateway receipt.
            amount_minor_units (int): Amount in the smallest currency unit (paise, cents).
            currency (str): ISO currency code (e.g. 'INR').
        Returns:
            str: The gateway intent (order) id.
        Raises:
            UpstreamUnavailable: On timeouts, connection failures or error responses.
        """
        payload = {
            "amount": amount_minor_units,
            "currency": currency,
            "receipt": order_id,
        }
        headers = {"Idempotency-Key": f"intent-{order_id}"}

        try:
            response = self.client.post("/v1/orders", json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException:
            log.error(f"[Order: {order_id}] Payment gateway timeout. No intent recorded.")
            raise UpstreamUnavailable("Payment gateway timed out", order_id=order_id)
        except httpx.HTTPStatusError as e:
            log.error(f"[Order: {order_id}] Payment gateway returned HTTP {e.response.status_code}.")
            raise UpstreamUnavailable(
                "Payment gateway rejected the request",
                order_id=order_id,
                upstream_status=e.response.status_code,
            )
        except (httpx.TransportError, ValueError) as e:
            log.error(f"[Order: {order_id}] Payment gateway unreachable: {e}")
            raise UpstreamUnavailable("Payment gateway unreachable", order_id=order_id)

        intent_id = data.get("id")
        if not intent_id:
            log.error(f"[Order: {order_id}] Payment gateway response without intent id: {data}")
            raise UpstreamUnavailable("Payment gateway returned no intent id", order_id=order_id)
        return intent_id


# --- Order Event Publisher (MQ) ---
class OrderEventPublisher:
    """
    Publishes order status changes to RabbitMQ for read-only consumers (analytics, notifications).

    Each event gets its own short-lived connection. Request handlers run on a
    threadpool and a BlockingConnection must stay on one thread, so nothing
    connection-related is kept on the instance.
    """
    def __init__(self, host=None, queue=None):
        self.host = host or config.RABBITMQ_HOST
        self.queue = queue or config.ORDER_EVENTS_QUEUE

    def _connect(self):
        """
        Opens a RabbitMQ connection and declares the durable event queue.
        Returns:
            tuple: (connection, channel)
        Raises:
            pika.exceptions.AMQPConnectionError: If the connection fails.
        """
        credentials = pika.PlainCredentials(config.RABBITMQ_USER, config.RABBITMQ_PASSWORD)
        connection = pika.BlockingConnection(
            pika.ConnectionParameters(host=self.host, credentials=credentials)
        )
        channel = connection.channel()
        channel.queue_declare(queue=self.queue, durable=True)
        return connection, channel

    def publish_status_change(self, order_id: str, previous_status: str, status: str, actor_role: str):
        """
        Sends one status change event.
        Raises:
            pika.exceptions.AMQPError: If connecting or publishing fails.
        """
        message = {
            "eventId": str(uuid.uuid4()),
            "orderId": order_id,
            "previousStatus": previous_status,
            "status": status,
            "actorRole": actor_role,
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        connection, channel = self._connect()
        try:
            channel.basic_publish(
                exchange='',
                routing_key=self.queue,
                body=json.dumps(message),
                properties=pika.BasicProperties(delivery_mode=2)  # persistent
            )
        finally:
            if connection.is_open:
                connection.close()
        log.info(f"[Order: {order_id}] Status event {previous_status} -> {status} published.")

    def close(self):
        pass


class NullEventPublisher:
    """Used when ORDER_EVENTS_ENABLED is off."""

    def publish_status_change(self, order_id, previous_status, status, actor_role):
        log.debug(f"[Order: {order_id}] Status events disabled, skipping {previous_status} -> {status}.")

    def close(self):
        pass


def make_event_publisher():
    if config.ORDER_EVENTS_ENABLED:
        return OrderEventPublisher()
    return NullEventPublisher()
