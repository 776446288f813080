# app/models/__init__.py
from .plan_model import Plan
from .user_model import User
from .order_model import Order
from .transaction_model import PaymeTransaction
from .payment_model import Payment

__all__ = ["Plan", "User", "Order", "PaymeTransaction", "Payment"]
