from .catalog import Product
from .orders import Order, OrderItem, OrderSequence
from .payments import Payment
from .inventory import InventoryLog

__all__ = [
    'Product',
    'Order', 'OrderItem', 'OrderSequence',
    'Payment',
    'InventoryLog',
]
