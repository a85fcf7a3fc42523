"""Tests for the ReconcileManager"""

# Standard
from datetime import timedelta
from unittest import mock

# Third Party
import pytest

# First Party
import alog

# Local
from gateway_operator.constants import DEPLOYMENT_STATE_LABEL, ServiceState
from gateway_operator.dataplane import DataPlaneReconciler
from gateway_operator.exceptions import (
    ClusterError,
    ConfigError,
    ConflictError,
    NotFoundError,
    PreconditionError,
    ResourceCountReducedError,
)
from gateway_operator.reconcile import (
    ReconcileManager,
    ReconciliationResult,
    Reconciler,
    RequeueParams,
)
from gateway_operator.resources import generate_deployment
from gateway_operator.test_helpers.helpers import (
    TEST_DATAPLANE_NAME,
    TEST_NAMESPACE,
    MockDeployManager,
    library_config,
    make_dataplane,
    reconcile_until_done,
    setup_dataplane,
)

log = alog.use_channel("TEST")

## Helpers #####################################################################


class RaisingReconciler(Reconciler):
    """Reconciler that raises the configured exception, if any"""

    KIND = "DataPlane"
    error = None

    def __init__(self, deploy_manager):
        super().__init__(deploy_manager)
        self.calls = []

    def reconcile(self, namespace, name):
        self.calls.append((namespace, name))
        if self.error is not None:
            raise self.error
        return ReconciliationResult.done()


def reconciler_raising(error):
    return type("Raising", (RaisingReconciler,), {"error": error})


RESOURCE = setup_dataplane()

## Results #####################################################################


def test_result_done():
    """Make sure that a done result does not requeue"""
    result = ReconciliationResult.done()
    assert not result.requeue
    assert result.exception is None


def test_result_requeue_now():
    """Make sure that requeue_now uses the zero backoff"""
    with library_config(conflict_requeue_seconds=0):
        result = ReconciliationResult.requeue_now()
    assert result.requeue
    assert result.requeue_params.requeue_after == timedelta(seconds=0)


def test_requeue_params_default():
    """Make sure that the default backoff comes from the library config"""
    with library_config(requeue_after_seconds=42):
        assert RequeueParams().requeue_after == timedelta(seconds=42)


## ReconcileManager ############################################################


def test_construct_with_deploy_manager():
    """Make sure that a given deploy manager is used as is"""
    dm = MockDeployManager()
    assert ReconcileManager(deploy_manager=dm).deploy_manager is dm


def test_construct_lazy_deploy_manager():
    """Make sure that the live deploy manager is only created on first use"""
    with mock.patch(
        "gateway_operator.reconcile.OpenshiftDeployManager"
    ) as deploy_manager_class:
        manager = ReconcileManager()
        assert not deploy_manager_class.called
        first = manager.deploy_manager
        assert manager.deploy_manager is first
        deploy_manager_class.assert_called_once_with(registry=None)


def test_generate_id_uniq():
    """Make sure that reconcile ids are short and unique"""
    ids = {ReconcileManager.generate_id() for _ in range(100)}
    assert len(ids) == 100
    assert all(len(reconcile_id) == 8 for reconcile_id in ids)


def test_reconcile_with_class():
    """Make sure that a Reconciler class is constructed with the manager's
    deploy manager and run against the resource
    """
    dm = MockDeployManager()
    with mock.patch.object(
        RaisingReconciler,
        "reconcile",
        autospec=True,
        return_value=ReconciliationResult.done(),
    ) as reconcile:
        result = ReconcileManager(deploy_manager=dm).reconcile(
            RaisingReconciler, RESOURCE
        )
    assert not result.requeue
    reconciler, namespace, name = reconcile.call_args.args
    assert reconciler.deploy_manager is dm
    assert (namespace, name) == (TEST_NAMESPACE, TEST_DATAPLANE_NAME)


def test_reconcile_with_instance():
    """Make sure that a constructed Reconciler is used as is"""
    dm = MockDeployManager()
    reconciler = RaisingReconciler(dm)
    ReconcileManager(deploy_manager=dm).reconcile(reconciler, RESOURCE)
    assert reconciler.calls == [(TEST_NAMESPACE, TEST_DATAPLANE_NAME)]


def test_reconcile_propagates_errors():
    """Make sure that reconcile itself does not handle errors"""
    manager = ReconcileManager(deploy_manager=MockDeployManager())
    with pytest.raises(ClusterError):
        manager.reconcile(reconciler_raising(ClusterError("boom")), RESOURCE)


## safe_reconcile ##############################################################


def test_safe_reconcile_success():
    """Make sure that a successful result is passed through"""
    manager = ReconcileManager(deploy_manager=MockDeployManager())
    result = manager.safe_reconcile(RaisingReconciler, RESOURCE)
    assert not result.requeue
    assert result.exception is None


def test_safe_reconcile_conflict():
    """Make sure that a conflict requeues immediately without recording an
    error
    """
    manager = ReconcileManager(deploy_manager=MockDeployManager())
    with library_config(conflict_requeue_seconds=0):
        result = manager.safe_reconcile(
            reconciler_raising(ConflictError("stale")), RESOURCE
        )
    assert result.requeue
    assert result.requeue_params.requeue_after == timedelta(seconds=0)
    assert result.exception is None


@pytest.mark.parametrize(
    "error",
    [
        ResourceCountReducedError("Deployment", TEST_DATAPLANE_NAME),
        PreconditionError("not yet"),
        NotFoundError("gone"),
        ClusterError("boom"),
        ConfigError("bad spec"),
        ValueError("unexpected"),
    ],
)
def test_safe_reconcile_errors(error):
    """Make sure that every other error requeues after the default backoff and
    is recorded
    """
    manager = ReconcileManager(deploy_manager=MockDeployManager())
    with library_config(requeue_after_seconds=60):
        result = manager.safe_reconcile(reconciler_raising(error), RESOURCE)
    assert result.requeue
    assert result.requeue_params.requeue_after == timedelta(seconds=60)
    assert result.exception is error


def test_safe_reconcile_reduces_duplicates():
    """Make sure that duplicate Deployments end the pass with a requeue and
    are gone on the next one
    """
    dataplane = make_dataplane()
    dm = MockDeployManager(resources=[setup_dataplane()])
    manager = ReconcileManager(deploy_manager=dm)
    reconciler = DataPlaneReconciler(dm)
    reconcile_until_done(reconciler, dm)
    dm.create_object(
        generate_deployment(
            dataplane, extra_labels={DEPLOYMENT_STATE_LABEL: ServiceState.LIVE.value}
        )
    )

    result = manager.safe_reconcile(reconciler, RESOURCE)
    assert result.requeue
    assert isinstance(result.exception, ResourceCountReducedError)
    assert len(dm.list_objs("Deployment")) == 1

    assert manager.safe_reconcile(reconciler, RESOURCE).exception is None
