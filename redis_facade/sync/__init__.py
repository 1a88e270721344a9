from .lock import RedisLock, FencedLock, compare_and_delete
from .flow_control import FlowControl
from .queue import RedisQueue
from .throttle import RedisThrottle
from .throttle_queue import RedisThrottleQueue

__all__ = [
    'RedisLock',
    'FencedLock',
    'compare_and_delete',
    'FlowControl',
    'RedisQueue',
    'RedisThrottle',
    'RedisThrottleQueue',
]
