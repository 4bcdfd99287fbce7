from models.user import User
from models.field import Field
from models.subscription import Subscription
from models.booking import Booking
from models.slot_lock import SlotLock
from models.counter import Counter
from models.payment import Payment, Payout, Transaction

__all__ = [
    "User", "Field", "Subscription", "Booking",
    "SlotLock", "Counter", "Payment", "Payout", "Transaction",
]
