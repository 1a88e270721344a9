from enum import Enum


class KeyPrefix(str, Enum):
    """
    Store key namespaces, one per primitive, so primitives sharing a logical
    key never collide.
    """

    LOCK = "redisLock"  # STRING → lock token
    QUEUE = "redisQueue"  # STRING → fenced lock of the serialized queue
    THROTTLE = "redisThrottle"  # STRING → last active timestamp
    THROTTLE_LOCK = "redisThrottleLock"  # STRING → fenced window-start lock
    THROTTLE_CACHE = "redisThrottleCache"  # STRING → encoded outcome
    THROTTLE_QUEUE = "redisThrottleQueue"  # ZSET → signature by next run time
    THROTTLE_QUEUE_PAYLOAD = "redisThrottleQueuePayload"  # HASH → signature to payload json
    THROTTLE_QUEUE_LOCK = "redisThrottleQueueLock"  # STRING → pull lock / per-signature push lock

    def of(self, *parts: str) -> str:
        return ":".join([self.value, *parts])


class FacadeKind(str, Enum):
    LOCK = "lock"
    QUEUE = "queue"
    THROTTLE = "throttle"
    MESSAGE_QUEUE = "message_queue"
    THROTTLE_QUEUE = "throttle_queue"
