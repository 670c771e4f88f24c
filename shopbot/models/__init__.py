from shopbot.models.conversation import Conversation
from shopbot.models.customer import Customer
from shopbot.models.flow import Flow
from shopbot.models.message import Message
from shopbot.models.notification import Notification
from shopbot.models.store import Store

__all__ = [
    "Store",
    "Customer",
    "Conversation",
    "Message",
    "Notification",
    "Flow",
]
