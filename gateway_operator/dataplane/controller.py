"""
The standard (non-rollout) DataPlane reconciler. It keeps the live admin
Service, ingress Service, TLS Secret and Deployment of a DataPlane converged
and publishes their state in the DataPlane status.
"""

# Standard
from typing import List, Optional
import uuid

# Third Party
import jsonpatch

# First Party
import alog

# Local
from .. import conditions
from ..addresses import addresses_from_service, service_has_load_balancer_address
from ..conditions import ConditionStatus, ReadyReason
from ..constants import (
    APP_LABEL,
    DEPLOYMENT_STATE_LABEL,
    READY_CONDITION,
    SERVICE_STATE_LABEL,
    SERVICE_TYPE_LABEL,
    ServiceState,
    ServiceType,
)
from ..deploy_manager import DeployManagerBase
from ..ensure import (
    ensure_admin_service,
    ensure_deployment,
    ensure_ingress_service,
    ensure_tls_secret,
)
from ..exceptions import assert_cluster
from ..managed_object import DataPlane, ManagedObject
from ..patch import OpResult
from ..reconcile import ReconciliationResult, Reconciler
from ..resources import admin_api_subject
from ..resources.secrets import service_secret_labels
from ..utils import nested_get, render_label_selector

log = alog.use_channel("DPCTL")

DATAPLANE_KIND = "DataPlane"

WAITING_TO_BECOME_READY_MESSAGE = "Waiting for the resource to become ready"
DEPENDENCIES_NOT_READY_MESSAGE = "There are dependencies which are not ready yet"

# Status fields compared to decide whether a status patch is needed
_COMPARED_STATUS_FIELDS = (
    "addresses",
    "replicas",
    "readyReplicas",
    "service",
    "selector",
)

## Status helpers ##############################################################


def get_dataplane(
    deploy_manager: DeployManagerBase, namespace: str, name: str
) -> Optional[DataPlane]:
    """Read the DataPlane fresh from the cluster. Returns None if it is gone."""
    success, content = deploy_manager.get_object_current_state(
        kind=DATAPLANE_KIND, name=name, namespace=namespace
    )
    assert_cluster(success, f"Failed to fetch DataPlane {namespace}/{name}")
    if content is None:
        return None
    return DataPlane(content)


def status_of(managed: ManagedObject) -> dict:
    """The mutable status dict of a Managed Resource definition"""
    return managed.definition.setdefault("status", {})


def _status_needs_patch(current: dict, updated: dict) -> bool:
    if conditions.needs_status_update(
        conditions.get_conditions(current), conditions.get_conditions(updated)
    ):
        return True
    current_status = current.get("status") or {}
    updated_status = updated.get("status") or {}
    return any(
        current_status.get(key) != updated_status.get(key)
        for key in _COMPARED_STATUS_FIELDS
    )


def write_status(
    deploy_manager: DeployManagerBase, current: dict, updated_status: dict
) -> dict:
    """Patch the status subresource from the current object to the updated
    status. The write is conditional on the resourceVersion of current.
    """
    patch = jsonpatch.make_patch(
        {"status": current.get("status") or {}}, {"status": updated_status}
    ).patch
    if "status" not in current:
        patch = [{"op": "add", "path": "/status", "value": updated_status}]
    metadata = current["metadata"]
    log.debug3("Patching status of %s with %s", metadata["name"], patch)
    success, patched = deploy_manager.patch_status(
        kind=current["kind"],
        name=metadata["name"],
        namespace=metadata.get("namespace"),
        patch=patch,
        api_version=current.get("apiVersion"),
        resource_version=metadata.get("resourceVersion"),
    )
    assert_cluster(success, f"Failed to patch status of {metadata['name']}")
    return patched


def patch_dataplane_status(
    deploy_manager: DeployManagerBase, dataplane: DataPlane
) -> bool:
    """Write the in-memory status of the DataPlane if it differs from the
    stored one in conditions, addresses, replicas, service or selector.

    Returns:
        patched:  bool
            Whether a status patch was written
    """
    current = get_dataplane(deploy_manager, dataplane.namespace, dataplane.name)
    if current is None:
        log.debug("DataPlane %s is gone, not patching status", dataplane.name)
        return False
    if not _status_needs_patch(current.definition, dataplane.definition):
        log.debug2("Status of DataPlane %s is up to date", dataplane.name)
        return False
    write_status(deploy_manager, current.definition, status_of(dataplane))
    return True


def init_ready(dataplane: DataPlane) -> bool:
    """Set Ready=False/DependenciesNotReady if the DataPlane has no Ready
    condition yet. Returns whether the condition was added.
    """
    _, found = conditions.get_condition(dataplane.definition, READY_CONDITION)
    if found:
        return False
    conditions.set_condition(
        dataplane.definition,
        conditions.new_condition(
            READY_CONDITION,
            ConditionStatus.FALSE,
            ReadyReason.DEPENDENCIES_NOT_READY,
            DEPENDENCIES_NOT_READY_MESSAGE,
            dataplane.generation,
        ),
    )
    return True


def _set_not_ready(dataplane: DataPlane, generation: int, message: str):
    conditions.set_condition(
        dataplane.definition,
        conditions.new_condition(
            READY_CONDITION,
            ConditionStatus.FALSE,
            ReadyReason.WAITING_TO_BECOME_READY,
            message,
            generation,
        ),
    )


## Readiness ###################################################################


def _list_live(
    deploy_manager: DeployManagerBase, dataplane: DataPlane, kind: str, labels: dict
) -> List[dict]:
    success, objs = deploy_manager.filter_objects_current_state(
        kind=kind,
        namespace=dataplane.namespace,
        label_selector=render_label_selector(labels),
    )
    assert_cluster(success, f"Failed to list live {kind} objects for {dataplane.name}")
    return [obj for obj in objs if dataplane.owns(obj)]


def deployment_not_ready(deployment: dict) -> bool:
    status = deployment.get("status") or {}
    replicas = status.get("replicas") or 0
    return replicas == 0 or (status.get("availableReplicas") or 0) < replicas


def ensure_dataplane_ready_status(
    deploy_manager: DeployManagerBase, dataplane: DataPlane, generation: int
) -> ReconciliationResult:
    """Publish the Ready condition and replica counts of the DataPlane from its
    live Deployment and live ingress Service.

    Ready is True once the single live Deployment has all its replicas
    available and the single live ingress Service has an address (when it is a
    LoadBalancer).
    """
    fresh = get_dataplane(deploy_manager, dataplane.namespace, dataplane.name)
    if fresh is None:
        return ReconciliationResult.done()
    dataplane = fresh
    status = status_of(dataplane)

    deployments = _list_live(
        deploy_manager,
        dataplane,
        "Deployment",
        {APP_LABEL: dataplane.name, DEPLOYMENT_STATE_LABEL: ServiceState.LIVE.value},
    )
    if not deployments:
        log.debug("No live Deployment for DataPlane %s", dataplane.name)
        _set_not_ready(dataplane, generation, WAITING_TO_BECOME_READY_MESSAGE)
        status["replicas"] = 0
        status["readyReplicas"] = 0
        return _patch_and_requeue(deploy_manager, dataplane)
    if len(deployments) > 1:
        log.debug("Multiple live Deployments for DataPlane %s", dataplane.name)
        return ReconciliationResult.requeue_now()

    deployment = deployments[0]
    if deployment_not_ready(deployment):
        _set_not_ready(
            dataplane,
            generation,
            f"{WAITING_TO_BECOME_READY_MESSAGE}: Deployment "
            f"{deployment['metadata']['name']} is not ready yet",
        )
        return _patch_and_requeue(deploy_manager, dataplane)

    services = _list_live(
        deploy_manager,
        dataplane,
        "Service",
        {
            APP_LABEL: dataplane.name,
            SERVICE_STATE_LABEL: ServiceState.LIVE.value,
            SERVICE_TYPE_LABEL: ServiceType.INGRESS.value,
        },
    )
    if not services:
        _set_not_ready(
            dataplane,
            generation,
            f"{WAITING_TO_BECOME_READY_MESSAGE}: ingress Service not found",
        )
        return _patch_and_requeue(deploy_manager, dataplane)
    if len(services) > 1:
        log.debug("Multiple live ingress Services for DataPlane %s", dataplane.name)
        return ReconciliationResult.requeue_now()

    service = services[0]
    if nested_get(
        service, "spec.type"
    ) == "LoadBalancer" and not service_has_load_balancer_address(service):
        _set_not_ready(
            dataplane,
            generation,
            f"{WAITING_TO_BECOME_READY_MESSAGE}: ingress Service "
            f"{service['metadata']['name']} is not ready yet",
        )
        return _patch_and_requeue(deploy_manager, dataplane)

    conditions.set_condition(
        dataplane.definition,
        conditions.new_condition(
            READY_CONDITION,
            ConditionStatus.TRUE,
            ReadyReason.READY,
            observed_generation=generation,
        ),
    )
    deployment_status = deployment.get("status") or {}
    status["replicas"] = deployment_status.get("replicas") or 0
    status["readyReplicas"] = deployment_status.get("readyReplicas") or 0
    return _patch_and_requeue(deploy_manager, dataplane)


def _patch_and_requeue(
    deploy_manager: DeployManagerBase, dataplane: DataPlane
) -> ReconciliationResult:
    if patch_dataplane_status(deploy_manager, dataplane):
        return ReconciliationResult.requeue_now()
    return ReconciliationResult.done()


## Reconciler ##################################################################


class DataPlaneReconciler(Reconciler):
    """Reconciler for DataPlanes without a Blue-Green rollout. Each pass stops
    after the first write so that the next pass observes the converged state.
    """

    KIND = DATAPLANE_KIND

    def reconcile(self, namespace: str, name: str) -> ReconciliationResult:
        dataplane = get_dataplane(self.deploy_manager, namespace, name)
        if dataplane is None:
            log.debug("DataPlane %s/%s not found, nothing to do", namespace, name)
            return ReconciliationResult.done()
        if dataplane.deletion_timestamp is not None:
            log.debug("DataPlane %s/%s is being deleted, skipping", namespace, name)
            return ReconciliationResult.done()
        return self.reconcile_dataplane(dataplane)

    def reconcile_dataplane(  # pylint: disable=too-many-return-statements
        self, dataplane: DataPlane
    ) -> ReconciliationResult:
        """Run the standard reconcile sequence on a DataPlane read from the
        cluster
        """
        deploy_manager = self.deploy_manager
        if init_ready(dataplane) and patch_dataplane_status(deploy_manager, dataplane):
            log.debug("Initialized Ready condition of %s", dataplane.name)
            return ReconciliationResult.requeue_now()

        if not dataplane.status_selector:
            status_of(dataplane)["selector"] = str(uuid.uuid4())
            if patch_dataplane_status(deploy_manager, dataplane):
                log.debug("Initialized selector of %s", dataplane.name)
                return ReconciliationResult.requeue_now()

        live_service_labels = {SERVICE_STATE_LABEL: ServiceState.LIVE.value}
        result, admin_service = ensure_admin_service(
            deploy_manager,
            dataplane,
            extra_labels=live_service_labels,
            selector=dataplane.status_selector,
        )
        if result != OpResult.NOOP:
            log.debug("Admin Service %s %s", admin_service["metadata"]["name"], result)
            return ReconciliationResult.requeue_now()

        result, ingress_service = ensure_ingress_service(
            deploy_manager,
            dataplane,
            extra_labels=live_service_labels,
            selector=dataplane.status_selector,
        )
        if result != OpResult.NOOP:
            log.debug(
                "Ingress Service %s %s", ingress_service["metadata"]["name"], result
            )
            return ReconciliationResult.requeue_now()

        ingress_name = ingress_service["metadata"]["name"]
        if dataplane.status.get("service") != ingress_name:
            status_of(dataplane)["service"] = ingress_name
            if patch_dataplane_status(deploy_manager, dataplane):
                log.debug("Published ingress Service %s", ingress_name)
                return ReconciliationResult.requeue_now()

        admin_name = admin_service["metadata"]["name"]
        result, cert_secret = ensure_tls_secret(
            deploy_manager,
            dataplane,
            admin_api_subject(admin_name, dataplane.namespace),
            extra_labels=service_secret_labels(admin_name),
        )
        if result != OpResult.NOOP:
            log.debug("Certificate Secret %s", result)
            return ReconciliationResult.requeue_now()

        if not nested_get(ingress_service, "spec.clusterIP"):
            log.debug("Ingress Service %s has no cluster IP yet", ingress_name)
            return ReconciliationResult.done()

        addresses = addresses_from_service(ingress_service)
        if dataplane.status.get("addresses") != addresses:
            status_of(dataplane)["addresses"] = addresses
            if patch_dataplane_status(deploy_manager, dataplane):
                log.debug("Published addresses of %s", ingress_name)
                return ReconciliationResult.requeue_now()

        result, deployment = ensure_deployment(
            deploy_manager,
            dataplane,
            extra_labels={DEPLOYMENT_STATE_LABEL: ServiceState.LIVE.value},
            cert_secret_name=cert_secret["metadata"]["name"],
            selector=dataplane.status_selector,
        )
        if result != OpResult.NOOP:
            log.debug("Deployment %s %s", deployment["metadata"]["name"], result)
            return ReconciliationResult.requeue_now()

        result = ensure_dataplane_ready_status(
            deploy_manager, dataplane, dataplane.generation
        )
        log.debug("Reconcile of DataPlane %s complete", dataplane.name)
        return result
