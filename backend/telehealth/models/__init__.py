"""SQLAlchemy database models."""

from telehealth.models.order import Order, OrderItem
from telehealth.models.user_appointment import UserAppointment
from telehealth.models.user_data import UserData
from telehealth.models.user_subscription import SubscriptionStatus, UserSubscription

__all__ = [
    "Order",
    "OrderItem",
    "SubscriptionStatus",
    "UserAppointment",
    "UserData",
    "UserSubscription",
]
