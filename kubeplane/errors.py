from __future__ import annotations

import logging
from typing import Optional, Protocol

from kubeplane.logger import logger as default_logger


class ClusterError(Exception):
    """Base class of every error raised by the control plane."""


class InvalidRequestError(ClusterError):
    """Caller supplied data failed pre-flight checks."""


class AlreadyExistsError(InvalidRequestError):
    def __init__(self, message: str = "cluster already exists with this name") -> None:
        super().__init__(message)


class ProviderValidationError(InvalidRequestError):
    """A provider rejected a region, zone, instance type or image."""


class NoChangesError(InvalidRequestError):
    def __init__(self, message: str = "there is no change in the update request") -> None:
        super().__init__(message)


class SecretValidationError(InvalidRequestError):
    pass


class UnsupportedProviderError(InvalidRequestError):
    pass


class PreconditionFailedError(ClusterError):
    """The cluster is not in a state that allows the requested action."""


class OperationInProgressError(PreconditionFailedError):
    pass


class IllegalTransitionError(PreconditionFailedError):
    pass


class ClusterNotFoundError(ClusterError):
    pass


class SecretNotFoundError(ClusterError):
    pass


class InfrastructureError(ClusterError):
    """A cloud provider, Kubernetes or Helm call failed."""


class ResourceNotFoundError(InfrastructureError):
    """The cloud resource being removed does not exist anymore."""


class HookError(InfrastructureError):
    def __init__(self, hook: str, cause: Exception) -> None:
        super().__init__(str(cause))
        self.hook = hook
        self.cause = cause


def is_invalid(err: BaseException) -> bool:
    return isinstance(err, InvalidRequestError)


def is_precondition_failed(err: BaseException) -> bool:
    return isinstance(err, PreconditionFailedError)


def is_not_found(err: BaseException) -> bool:
    return isinstance(err, (ClusterNotFoundError, SecretNotFoundError, ResourceNotFoundError))


class ErrorHandler(Protocol):
    def handle(self, err: BaseException) -> None: ...


class LoggingErrorHandler:
    """
    Reports errors that cannot be returned to a caller.

    Asynchronous units of work have no caller to propagate to, so their
    failures end up here.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or default_logger

    def handle(self, err: BaseException) -> None:
        self._logger.error(f"{type(err).__name__}: {err}", exc_info=err)
