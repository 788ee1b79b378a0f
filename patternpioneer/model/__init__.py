from .db import (
    Base, Pattern, User, Order, OrderItem, Download, Subscription,
    CreditTransaction, Favorite, NewsletterSubscription, WebhookEventSeen,
    create_schema,
)

__all__ = [
    "Base", "Pattern", "User", "Order", "OrderItem", "Download",
    "Subscription", "CreditTransaction", "Favorite", "NewsletterSubscription",
    "WebhookEventSeen", "create_schema",
]
