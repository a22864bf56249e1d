"""Per-user delivery scheduling."""

from .delivery import (
    DeliveryUser,
    DeliverySelection,
    DeliveryHandler,
    WebhookDeliveryHandler,
    DeliveryRunStats,
    get_users_for_delivery_now,
    list_delivery_users,
    load_report_trends,
    get_delivery_handler,
    run_delivery_tick,
)

__all__ = [
    'DeliveryUser',
    'DeliverySelection',
    'DeliveryHandler',
    'WebhookDeliveryHandler',
    'DeliveryRunStats',
    'get_users_for_delivery_now',
    'list_delivery_users',
    'load_report_trends',
    'get_delivery_handler',
    'run_delivery_tick',
]
