"""Room chat core: broadcast room, private messages, read state and unread counts."""

from .chat import ChatService
from .errors import ChatError
from .hub import FanoutHub, Subscription, SubscriptionDropped
from .messages import BroadcastMessage, ChangeEvent, MessageKind, PrivateMessage
from .server import main, simulate
from .topics import BROADCAST, PrivateTopic, UserTopic

__all__ = [
    "BROADCAST",
    "BroadcastMessage",
    "ChangeEvent",
    "ChatError",
    "ChatService",
    "FanoutHub",
    "MessageKind",
    "PrivateMessage",
    "PrivateTopic",
    "Subscription",
    "SubscriptionDropped",
    "UserTopic",
    "main",
    "simulate",
]
