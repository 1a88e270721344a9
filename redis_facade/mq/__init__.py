from .registry import PubSubRegistry, ChannelRegistration
from .message_queue import RedisMessageQueue

__all__ = [
    'PubSubRegistry',
    'ChannelRegistration',
    'RedisMessageQueue',
]
