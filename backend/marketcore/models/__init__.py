from .users import User, Business
from .catalog import Product
from .commerce import CartItem, Order, OrderItem
from .inventory import InventoryTransaction
from .payments import Payment, WebhookEvent, PaymentAuditLog
from .subscriptions import SubscriptionPlan, Subscription, OriginCalculation

__all__ = [
    'User', 'Business',
    'Product',
    'CartItem', 'Order', 'OrderItem',
    'InventoryTransaction',
    'Payment', 'WebhookEvent', 'PaymentAuditLog',
    'SubscriptionPlan', 'Subscription', 'OriginCalculation',
]
