from .inventory import Product, Supplier, StockMovement, StockBalance
from .orders import Order, OrderItem, OrderEvent
from .purchasing import PurchaseOrder, PurchaseOrderItem
from .documents import DocumentSequence, IdempotencyRecord, NotificationDispatch

__all__ = [
    'Product', 'Supplier', 'StockMovement', 'StockBalance',
    'Order', 'OrderItem', 'OrderEvent',
    'PurchaseOrder', 'PurchaseOrderItem',
    'DocumentSequence', 'IdempotencyRecord', 'NotificationDispatch',
]
