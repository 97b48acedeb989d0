# Routers mounted under /api by main.py
from signatura_billing.api.routes import cron, subscriptions, webhooks

__all__ = ["cron", "subscriptions", "webhooks"]
