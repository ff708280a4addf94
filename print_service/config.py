"""
config.py — Environment-driven Configuration for the Print Order Service

All settings are read once at import time from environment variables, with
defaults suitable for local development against the mock services.

Groups:
    • Database (SQLAlchemy URL)
    • Payment gateway (REST API credentials and currency)
    • Object storage worker (capability token secret and TTL)
    • Order status events (RabbitMQ)
    • Logging
"""

import os

# Database
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./print_orders.db")

# Payment gateway
PAYMENT_GATEWAY_URL = os.environ.get("PAYMENT_GATEWAY_URL", "http://localhost:8001")
GATEWAY_KEY_ID = os.environ.get("GATEWAY_KEY_ID", "rzp_test_key")
# Never sent to clients; used for basic auth and callback signature checks
GATEWAY_KEY_SECRET = os.environ.get("GATEWAY_KEY_SECRET", "rzp_test_secret")
PAYMENT_CURRENCY = os.environ.get("PAYMENT_CURRENCY", "INR")

# Object storage worker
STORAGE_WORKER_URL = os.environ.get("STORAGE_WORKER_URL", "http://localhost:8002")
STORAGE_TOKEN_SECRET = os.environ.get("STORAGE_TOKEN_SECRET", "dev-storage-secret")
GRANT_TTL_SECONDS = int(os.environ.get("GRANT_TTL_SECONDS", "120"))
# Presented by the storage worker when it redeems client tokens
STORAGE_WORKER_API_KEY = os.environ.get("STORAGE_WORKER_API_KEY", "dev-worker-key")

# Order status events
RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
RABBITMQ_USER = os.environ.get("RABBITMQ_USER", "printshop")
RABBITMQ_PASSWORD = os.environ.get("RABBITMQ_PASSWORD", "printshop")
ORDER_EVENTS_QUEUE = os.environ.get("ORDER_EVENTS_QUEUE", "orders.status.updates")
ORDER_EVENTS_ENABLED = os.environ.get("ORDER_EVENTS_ENABLED", "true").lower() in ("1", "true", "yes")

# Logging
LOG_FILE = os.environ.get("LOG_FILE", "print_orders.log")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
