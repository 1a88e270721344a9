from .error import (
    RedisFacadeError, ArgumentError, ConfigError, LockError, QueueError, ThrottleError,
    MessageQueueError, CodecError
)
