# Import models so that SQLAlchemy metadata includes them on app startup
from .user import User  # noqa: F401
from .store import Store  # noqa: F401
from .product import Product, ProductVariant  # noqa: F401
from .coupon import Coupon  # noqa: F401
from .order import Order  # noqa: F401
from .order_item import OrderItem  # noqa: F401
from .order_event import OrderEvent  # noqa: F401
from .transaction import Transaction  # noqa: F401
from .payout import Payout  # noqa: F401
from .return_request import ReturnRequest, ReturnItem  # noqa: F401
