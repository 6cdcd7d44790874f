from navigator.models.base import Base
from navigator.models.price import Price
from navigator.models.product import Product
from navigator.models.subscription import Subscription
from navigator.models.user import User

__all__ = [
    "Base",
    "Price",
    "Product",
    "Subscription",
    "User",
]
