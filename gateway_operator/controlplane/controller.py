"""
The ControlPlane reconciler. It keeps the admin API client certificate and the
controller Deployment of a ControlPlane converged and reports whether the
controller is provisioned.
"""

# Standard
from typing import Optional

# First Party
import alog

# Local
from .. import conditions
from ..conditions import ConditionStatus, ProvisionedReason
from ..constants import PROVISIONED_CONDITION
from ..dataplane.controller import (
    deployment_not_ready,
    get_dataplane,
    status_of,
    write_status,
)
from ..deploy_manager import DeployManagerBase
from ..ensure import ensure_controlplane_deployment, ensure_tls_secret
from ..exceptions import assert_cluster
from ..managed_object import ControlPlane
from ..patch import OpResult
from ..reconcile import ReconciliationResult, Reconciler
from ..resources.secrets import service_secret_labels

log = alog.use_channel("CPCTL")

CONTROLPLANE_KIND = "ControlPlane"

# The service the admin API client certificate is used by
ADMIN_SECRET_USAGE = "admin"

## Status helpers ##############################################################


def get_controlplane(
    deploy_manager: DeployManagerBase, namespace: str, name: str
) -> Optional[ControlPlane]:
    """Read the ControlPlane fresh from the cluster. Returns None if it is
    gone.
    """
    success, content = deploy_manager.get_object_current_state(
        kind=CONTROLPLANE_KIND, name=name, namespace=namespace
    )
    assert_cluster(success, f"Failed to fetch ControlPlane {namespace}/{name}")
    if content is None:
        return None
    return ControlPlane(content)


def admin_client_subject(controlplane: ControlPlane) -> str:
    return f"{controlplane.name}.{controlplane.namespace}"


def set_provisioned(
    controlplane: ControlPlane,
    status: ConditionStatus,
    reason: ProvisionedReason,
    message: str = "",
):
    conditions.set_condition(
        controlplane.definition,
        conditions.new_condition(
            PROVISIONED_CONDITION,
            status,
            reason,
            message,
            controlplane.generation,
        ),
    )


def patch_controlplane_status(
    deploy_manager: DeployManagerBase, controlplane: ControlPlane
) -> bool:
    """Write the in-memory conditions of the ControlPlane if they differ from
    the stored ones. Returns whether a status patch was written.
    """
    current = get_controlplane(
        deploy_manager, controlplane.namespace, controlplane.name
    )
    if current is None:
        log.debug("ControlPlane %s is gone, not patching status", controlplane.name)
        return False
    if not conditions.needs_status_update(
        conditions.get_conditions(current.definition),
        conditions.get_conditions(controlplane.definition),
    ):
        log.debug2("Status of ControlPlane %s is up to date", controlplane.name)
        return False
    write_status(deploy_manager, current.definition, status_of(controlplane))
    return True


## Reconciler ##################################################################


class ControlPlaneReconciler(Reconciler):
    """Reconciler for ControlPlanes. Like the DataPlane reconcilers, each pass
    stops after its first write.
    """

    KIND = CONTROLPLANE_KIND

    def reconcile(self, namespace: str, name: str) -> ReconciliationResult:
        controlplane = get_controlplane(self.deploy_manager, namespace, name)
        if controlplane is None:
            log.debug("ControlPlane %s/%s not found, nothing to do", namespace, name)
            return ReconciliationResult.done()
        if controlplane.deletion_timestamp is not None:
            log.debug("ControlPlane %s/%s is being deleted, skipping", namespace, name)
            return ReconciliationResult.done()
        return self.reconcile_controlplane(controlplane)

    def reconcile_controlplane(
        self, controlplane: ControlPlane
    ) -> ReconciliationResult:
        """Run the reconcile sequence on a ControlPlane read from the cluster"""
        deploy_manager = self.deploy_manager
        _, found = conditions.get_condition(
            controlplane.definition, PROVISIONED_CONDITION
        )
        if not found:
            set_provisioned(
                controlplane, ConditionStatus.FALSE, ProvisionedReason.PODS_NOT_READY
            )
            if patch_controlplane_status(deploy_manager, controlplane):
                log.debug("Marked ControlPlane %s scheduled", controlplane.name)
                return ReconciliationResult.requeue_now()

        dataplane_service = self._dataplane_service(controlplane)

        result, cert_secret = ensure_tls_secret(
            deploy_manager,
            controlplane,
            admin_client_subject(controlplane),
            extra_labels=service_secret_labels(ADMIN_SECRET_USAGE),
        )
        if result != OpResult.NOOP:
            log.debug("Admin client certificate Secret %s", result)
            return ReconciliationResult.requeue_now()

        result, deployment = ensure_controlplane_deployment(
            deploy_manager,
            controlplane,
            dataplane_service=dataplane_service,
            cert_secret_name=cert_secret["metadata"]["name"],
        )
        if result != OpResult.NOOP:
            log.debug("Deployment %s %s", deployment["metadata"]["name"], result)
            return ReconciliationResult.requeue_now()

        if dataplane_service is None:
            message = "DataPlane is not set"
            if controlplane.dataplane_name:
                message = f"DataPlane {controlplane.dataplane_name} is not available"
            set_provisioned(
                controlplane,
                ConditionStatus.FALSE,
                ProvisionedReason.NO_DATAPLANE,
                message,
            )
        elif deployment_not_ready(deployment):
            set_provisioned(
                controlplane,
                ConditionStatus.FALSE,
                ProvisionedReason.PODS_NOT_READY,
                f"Deployment {deployment['metadata']['name']} is not ready yet",
            )
        else:
            set_provisioned(
                controlplane, ConditionStatus.TRUE, ProvisionedReason.PROVISIONED
            )
        if patch_controlplane_status(deploy_manager, controlplane):
            return ReconciliationResult.requeue_now()
        log.debug("Reconcile of ControlPlane %s complete", controlplane.name)
        return ReconciliationResult.done()

    def _dataplane_service(self, controlplane: ControlPlane) -> Optional[str]:
        """The ingress Service published by the configured DataPlane, if the
        DataPlane exists and has published one
        """
        name = controlplane.dataplane_name
        if not name:
            return None
        dataplane = get_dataplane(self.deploy_manager, controlplane.namespace, name)
        if dataplane is None:
            log.debug("DataPlane %s of %s not found", name, controlplane.name)
            return None
        return dataplane.status.get("service")
