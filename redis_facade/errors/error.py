class RedisFacadeError(Exception):
    """Base error for redis-facade"""
    def __init__(self, message: str = None, source: Exception = None):
        self.message = message
        self.source = source
        super().__init__(self.__str__())

    def __str__(self):
        msg = self.message or self.__class__.__name__
        if self.source:
            return f"{msg}: {self.source}"
        return msg

    def __reduce__(self):
        return (self.__class__, (self.message, self.source))

class ArgumentError(RedisFacadeError, ValueError):
    pass

class ConfigError(RedisFacadeError):
    pass

class LockError(RedisFacadeError):
    pass

class QueueError(RedisFacadeError):
    pass

class ThrottleError(RedisFacadeError):
    pass

class MessageQueueError(RedisFacadeError):
    pass

class CodecError(RedisFacadeError):
    pass
