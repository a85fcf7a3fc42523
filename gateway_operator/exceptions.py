"""
This module implements custom exceptions
"""

## Base Error ##################################################################


class GatewayOperatorError(Exception):
    """Base class for all gateway_operator exceptions"""

    def __init__(self, message: str, is_fatal_error: bool):
        """Construct with a flag indicating whether this is a fatal error. This
        will be a static property of all children.
        """
        super().__init__(message)
        self._is_fatal_error = is_fatal_error

    @property
    def is_fatal_error(self):
        """Property indicating whether or not this error should be surfaced as
        a failed reconcile rather than an expected early exit
        """
        return self._is_fatal_error


## Fatal Errors ################################################################


class FatalError(GatewayOperatorError):
    """A FatalError is one that indicates an unexpected, and likely
    unrecoverable, failure during a reconciliation.
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_fatal_error=True)


class ConfigError(FatalError):
    """Exception caused by invalid user-provided configuration, either in a
    managed resource's spec or in the library config
    """


class UnknownPromotionStrategyError(ConfigError):
    """Exception raised when a Blue-Green rollout names a promotion strategy
    that is not supported
    """

    def __init__(self, strategy):
        self.strategy = strategy
        super().__init__(f"unknown promotion strategy {strategy!r}")


class ClusterError(FatalError):
    """Exception caused when a cluster operation fails in an unexpected way"""


## Expected Errors #############################################################


class ExpectedError(GatewayOperatorError):
    """An ExpectedError is one that indicates an expected failure condition
    that should cause a reconciliation to terminate, but is expected to resolve
    in a subsequent reconciliation.
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_fatal_error=False)


class ConflictError(ExpectedError):
    """Exception raised when a write is rejected because the object's
    resourceVersion has moved on since it was read
    """


class NotFoundError(ExpectedError):
    """Exception raised when an object that was expected to exist is gone"""


class ResourceCountReducedError(ExpectedError):
    """Exception raised after duplicate owned resources were deleted. The
    caller must end the current reconcile and re-read on the next one.
    """

    def __init__(self, kind: str, owner_name: str = ""):
        self.kind = kind
        message = f"number of {kind} objects reduced"
        if owner_name:
            message += f" for {owner_name}"
        super().__init__(message)


class PreconditionError(ExpectedError):
    """Exception caused when an expected precondition is not met"""


## Assertions ##################################################################


def assert_precondition(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a PreconditionError. This
    should be used when a reconcile step requires that a precondition is met
    before continuing.
    """
    if not condition:
        raise PreconditionError(message)


def assert_config(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ConfigError. This should be
    used when certain conditions must be true in a managed resource's spec.
    """
    if not condition:
        raise ConfigError(message)


def assert_cluster(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ClusterError. This should
    be used when an operation in the cluster (such as listing owned objects)
    must succeed.
    """
    if not condition:
        raise ClusterError(message)
