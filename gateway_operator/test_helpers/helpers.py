"""
This module holds common helper functions for making testing easy
"""

# Standard
from contextlib import contextmanager
from typing import List, Optional
from unittest import mock
import copy
import inspect
import os

# First Party
import alog

# Local
from gateway_operator.config import library_config as config_detail_dict
from gateway_operator.constants import (
    APP_LABEL,
    DEPLOYMENT_STATE_LABEL,
    PROMOTE_WHEN_READY_ANNOTATION,
    PROMOTE_WHEN_READY_TRUE,
    SERVICE_STATE_LABEL,
    SERVICE_TYPE_LABEL,
    ServiceState,
    ServiceType,
)
from gateway_operator.deploy_manager import DryRunDeployManager
from gateway_operator.managed_object import DataPlane
from gateway_operator.utils import render_label_selector

log = alog.use_channel("TEST")


def configure_logging():
    alog.configure(
        os.environ.get("LOG_LEVEL", "off"),
        os.environ.get("LOG_FILTERS", ""),
        formatter="json"
        if os.environ.get("LOG_JSON", "").lower() == "true"
        else "pretty",
        thread_id=os.environ.get("LOG_THREAD_ID", "").lower() == "true",
    )


configure_logging()

TEST_DATAPLANE_NAME = "test-dataplane"
TEST_DATAPLANE_UID = "12345678-1234-1234-1234-123456789012"
TEST_NAMESPACE = "test"
TEST_CONTROLPLANE_NAME = "test-controlplane"
TEST_CONTROLPLANE_UID = "87654321-4321-4321-4321-210987654321"

DATAPLANE_API_VERSION = "gateway-operator.konghq.com/v1beta1"


def setup_dataplane(
    name=TEST_DATAPLANE_NAME,
    namespace=TEST_NAMESPACE,
    uid=TEST_DATAPLANE_UID,
    deployment=None,
    network=None,
    blue_green=None,
    promote_when_ready=False,
    **kwargs,
) -> dict:
    """Build a DataPlane object dict

    Args:
        deployment:  Optional[dict]
            spec.deployment of the DataPlane
        network:  Optional[dict]
            spec.network of the DataPlane
        blue_green:  Optional[dict]
            The Blue-Green rollout strategy. Passing {} enables the rollout
            with all defaults.
        promote_when_ready:  bool
            Set the promote-when-ready annotation to "true"
    """
    dataplane = kwargs or {}
    dataplane.setdefault("kind", "DataPlane")
    dataplane.setdefault("apiVersion", DATAPLANE_API_VERSION)
    metadata = dataplane.setdefault("metadata", {})
    metadata.setdefault("name", name)
    metadata.setdefault("namespace", namespace)
    metadata.setdefault("uid", uid)
    spec = dataplane.setdefault("spec", {})
    spec["deployment"] = copy.deepcopy(deployment or {})
    if network is not None:
        spec["network"] = copy.deepcopy(network)
    if blue_green is not None:
        spec["deployment"]["rollout"] = {
            "strategy": {"blueGreen": copy.deepcopy(blue_green)}
        }
    if promote_when_ready:
        metadata.setdefault("annotations", {})[
            PROMOTE_WHEN_READY_ANNOTATION
        ] = PROMOTE_WHEN_READY_TRUE
    return dataplane


def make_dataplane(*args, **kwargs) -> DataPlane:
    """Build a DataPlane view without a cluster"""
    return DataPlane(setup_dataplane(*args, **kwargs))


def setup_controlplane(
    name=TEST_CONTROLPLANE_NAME,
    namespace=TEST_NAMESPACE,
    uid=TEST_CONTROLPLANE_UID,
    dataplane=None,
    deployment=None,
) -> dict:
    """Build a ControlPlane object dict configuring the named DataPlane"""
    spec = {"deployment": copy.deepcopy(deployment or {})}
    if dataplane is not None:
        spec["dataplane"] = dataplane
    return {
        "kind": "ControlPlane",
        "apiVersion": DATAPLANE_API_VERSION,
        "metadata": {"name": name, "namespace": namespace, "uid": uid},
        "spec": spec,
    }


@contextmanager
def library_config(**config_overrides):
    """This context manager sets library config values temporarily and reverts
    them on completion
    """
    # Override the configs and hang onto the old values
    old_vals = {}
    for key, val in config_overrides.items():
        if key in config_detail_dict:
            old_vals[key] = config_detail_dict[key]
        config_detail_dict[key] = val

    # Yield to the context
    try:
        yield
    finally:
        # Revert to the old values
        for key in config_overrides:
            if key in old_vals:
                config_detail_dict[key] = old_vals[key]
            else:
                del config_detail_dict[key]


## Failure injection ###########################################################


def get_failable_method(fail_flag, method, failure_return=False):
    log.debug4(
        "Setting up failable mock of [%s] with fail flag: %s", str(method), fail_flag
    )

    def failable_method(*args, **kwargs):
        if isinstance(fail_flag, Exception) or (
            inspect.isclass(fail_flag) and issubclass(fail_flag, Exception)
        ):
            log.debug4("Raising in failable mock")
            raise fail_flag
        if callable(fail_flag):
            log.debug4("Calling callable fail flag")
            res = fail_flag()
            if res is not None:
                return res
        elif fail_flag:
            log.debug4("Returning %s", failure_return)
            return failure_return
        return method(*args, **kwargs)

    return failable_method


class FailOnce:
    """Helper callable that will fail once on the N'th call"""

    def __init__(self, fail_val, fail_number=1):
        self.call_count = 0
        self.fail_number = fail_number
        self.fail_val = fail_val

    def __call__(self, *_, **__):
        self.call_count += 1
        if self.call_count == self.fail_number:
            log.debug("Failing on call %d with %s", self.call_count, self.fail_val)
            if isinstance(self.fail_val, type) and issubclass(self.fail_val, Exception):
                raise self.fail_val("Raising!")
            return self.fail_val
        log.debug("Not failing on call %d", self.call_count)
        return None


class MockDeployManager(DryRunDeployManager):
    """The MockDeployManager wraps a standard DryRunDeployManager and wraps
    each write in a mock.Mock so that tests can count calls and inject
    failures
    """

    def __init__(
        self,
        create_fail=False,
        patch_fail=False,
        patch_status_fail=False,
        delete_fail=False,
        get_state_fail=False,
        resources=None,
        **kwargs,
    ):
        super().__init__(resources, **kwargs)
        self.get_object_current_state = mock.Mock(
            side_effect=get_failable_method(
                get_state_fail, super().get_object_current_state, (False, None)
            )
        )
        self.create_object = mock.Mock(
            side_effect=get_failable_method(
                create_fail, super().create_object, (False, None)
            )
        )
        self.patch_object = mock.Mock(
            side_effect=get_failable_method(
                patch_fail, super().patch_object, (False, None)
            )
        )
        self.patch_status = mock.Mock(
            side_effect=get_failable_method(
                patch_status_fail, super().patch_status, (False, None)
            )
        )
        self.delete_object = mock.Mock(
            side_effect=get_failable_method(
                delete_fail, super().delete_object, (False, False)
            )
        )

    def get_obj(self, kind, name, namespace=TEST_NAMESPACE, api_version=None):
        return self.get_object_current_state(kind, name, namespace, api_version)[1]

    def has_obj(self, *args, **kwargs):
        return self.get_obj(*args, **kwargs) is not None

    def list_objs(self, kind, namespace=TEST_NAMESPACE, labels=None) -> List[dict]:
        return self.filter_objects_current_state(
            kind=kind,
            namespace=namespace,
            label_selector=render_label_selector(labels) or None,
        )[1]


## Cluster simulation ##########################################################


def get_dataplane_obj(deploy_manager, name=TEST_DATAPLANE_NAME) -> Optional[dict]:
    return deploy_manager.get_object_current_state(
        kind="DataPlane", name=name, namespace=TEST_NAMESPACE
    )[1]


def list_dataplane_deployments(
    deploy_manager, state: ServiceState, name=TEST_DATAPLANE_NAME
) -> List[dict]:
    return deploy_manager.filter_objects_current_state(
        kind="Deployment",
        namespace=TEST_NAMESPACE,
        label_selector=render_label_selector(
            {APP_LABEL: name, DEPLOYMENT_STATE_LABEL: state.value}
        ),
    )[1]


def list_dataplane_services(
    deploy_manager,
    state: ServiceState,
    service_type: ServiceType,
    name=TEST_DATAPLANE_NAME,
) -> List[dict]:
    return deploy_manager.filter_objects_current_state(
        kind="Service",
        namespace=TEST_NAMESPACE,
        label_selector=render_label_selector(
            {
                APP_LABEL: name,
                SERVICE_STATE_LABEL: state.value,
                SERVICE_TYPE_LABEL: service_type.value,
            }
        ),
    )[1]


def mark_deployment_ready(deploy_manager, deployment: dict):
    """Publish a Deployment status with all desired replicas available, the
    way the Deployment controller would
    """
    current = deploy_manager.get_object_current_state(
        kind="Deployment",
        name=deployment["metadata"]["name"],
        namespace=deployment["metadata"]["namespace"],
    )[1]
    replicas = current["spec"].get("replicas", 1)
    deploy_manager.set_status(
        kind="Deployment",
        name=current["metadata"]["name"],
        namespace=current["metadata"]["namespace"],
        status={
            "replicas": replicas,
            "readyReplicas": replicas,
            "availableReplicas": replicas,
            "updatedReplicas": replicas,
        },
    )


def mark_service_load_balancer(deploy_manager, service: dict, ip: str = "1.2.3.4"):
    """Publish a load balancer ingress address on a Service"""
    deploy_manager.set_status(
        kind="Service",
        name=service["metadata"]["name"],
        namespace=service["metadata"]["namespace"],
        status={"loadBalancer": {"ingress": [{"ip": ip}]}},
    )


def reconcile_until_done(  # pylint: disable=too-many-arguments
    reconciler,
    deploy_manager,
    max_passes=50,
    on_pass=None,
    namespace=TEST_NAMESPACE,
    name=TEST_DATAPLANE_NAME,
):
    """Run reconcile passes until one returns without requeue, marking every
    Deployment ready and every LoadBalancer Service addressed in between.

    Returns:
        passes:  int
            The number of passes run
    """
    for passes in range(1, max_passes + 1):
        result = reconciler.reconcile(namespace, name)
        assert result.exception is None
        if on_pass is not None:
            on_pass(passes)
        settle_cluster(deploy_manager, namespace)
        if not result.requeue:
            return passes
    raise AssertionError(f"Reconcile did not converge in {max_passes} passes")


def settle_cluster(deploy_manager, namespace=TEST_NAMESPACE):
    """Simulate the cluster controllers acting on the owned objects"""
    for deployment in deploy_manager.filter_objects_current_state(
        kind="Deployment", namespace=namespace
    )[1]:
        replicas = deployment["spec"].get("replicas", 1)
        if (deployment.get("status") or {}).get("availableReplicas") != replicas:
            mark_deployment_ready(deploy_manager, deployment)
    for service in deploy_manager.filter_objects_current_state(
        kind="Service", namespace=namespace
    )[1]:
        if service["spec"].get("type") == "LoadBalancer" and not (
            (service.get("status") or {}).get("loadBalancer") or {}
        ).get("ingress"):
            mark_service_load_balancer(deploy_manager, service)
