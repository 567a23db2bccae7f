import logging
from unittest.mock import MagicMock

from kubeplane.cluster.manager import ClusterErrorHandler
from kubeplane.cluster.providers.dummy import DummyCluster
from kubeplane.errors import (
    AlreadyExistsError,
    ClusterNotFoundError,
    HookError,
    IllegalTransitionError,
    LoggingErrorHandler,
    OperationInProgressError,
    ProviderValidationError,
    ResourceNotFoundError,
    SecretNotFoundError,
    is_invalid,
    is_not_found,
    is_precondition_failed,
)
from kubeplane.model.status import ClusterStatus


def test_error_classification() -> None:
    assert is_invalid(AlreadyExistsError("taken"))
    assert is_invalid(ProviderValidationError("bad region"))
    assert not is_invalid(ClusterNotFoundError("gone"))

    assert is_precondition_failed(OperationInProgressError("busy"))
    assert is_precondition_failed(IllegalTransitionError("no"))
    assert not is_precondition_failed(ValueError())

    assert is_not_found(ClusterNotFoundError("gone"))
    assert is_not_found(SecretNotFoundError("gone"))
    assert is_not_found(ResourceNotFoundError("gone"))
    assert not is_not_found(HookError("ingress", RuntimeError("timeout")))


def test_hook_error_keeps_cause() -> None:
    cause = RuntimeError("timeout")
    err = HookError("InstallIngressController", cause)
    assert str(err) == "timeout"
    assert err.hook == "InstallIngressController"
    assert err.cause is cause


def test_logging_error_handler() -> None:
    logger = MagicMock(spec=logging.Logger)
    err = RuntimeError("boom")

    LoggingErrorHandler(logger).handle(err)

    logger.error.assert_called_once_with("RuntimeError: boom", exc_info=err)


def test_with_status_sets_cluster_status(store, secrets, make_record) -> None:
    cluster = DummyCluster(make_record(), store, secrets)
    cluster.persist()
    delegate = MagicMock()
    err = RuntimeError("provider exploded")

    ClusterErrorHandler(cluster, delegate).with_status(ClusterStatus.ERROR).handle(err)
    assert cluster.get_status().status == ClusterStatus.ERROR
    assert cluster.get_status().status_message == "provider exploded"
    delegate.handle.assert_called_once_with(err)

    ClusterErrorHandler(cluster, delegate).with_status(
        ClusterStatus.DELETING, "cleaning up"
    ).handle(err)
    assert cluster.get_status().status_message == "cleaning up"
