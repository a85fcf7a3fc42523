"""
The Blue-Green rollout reconciler for DataPlanes.

A DataPlane with a Blue-Green rollout strategy gets a second ("preview") set
of admin Service, ingress Service, TLS Secret and Deployment next to the
"live" set kept by the standard reconciler. The preview set runs the latest
spec under its own selector uuid (status.rollout.deployment.selector). Once
the preview Deployment is ready and the promotion strategy allows it, the
preview selector becomes the DataPlane selector, which makes the live Services
point at the preview pods. The preview Deployment is then relabelled live and
the older live Deployments are removed.

The rollout state is never stored as such. Every pass derives it from the
Ready condition and the RolledOut condition in status.rollout.conditions.
"""

# Standard
from contextlib import contextmanager
from typing import Dict, Optional
import copy
import uuid

# First Party
import alog

# Local
from .. import conditions
from ..addresses import addresses_from_service
from ..conditions import ROLLOUT_CONDITIONS, ConditionStatus, RolloutReason
from ..constants import (
    APP_LABEL,
    DEPLOYMENT_STATE_LABEL,
    PROMOTE_WHEN_READY_ANNOTATION,
    READY_CONDITION,
    ROLLED_OUT_CONDITION,
    SELECTOR_LABEL,
    SERVICE_STATE_LABEL,
    SERVICE_TYPE_LABEL,
    RolloutResourcePlan,
    ServiceState,
    ServiceType,
)
from ..deploy_manager import DeployManagerBase, list_owned
from ..ensure import (
    ensure_admin_service,
    ensure_deployment,
    ensure_ingress_service,
    ensure_tls_secret,
)
from ..exceptions import ConflictError, assert_precondition
from ..managed_object import DataPlane
from ..patch import OpResult, patch_if_non_empty
from ..reconcile import ReconciliationResult, Reconciler
from ..reduce import delete_objects, newest_first, without
from ..resources import admin_api_subject
from ..resources.secrets import service_secret_labels
from ..utils import nested_get
from .controller import (
    DATAPLANE_KIND,
    DataPlaneReconciler,
    ensure_dataplane_ready_status,
    get_dataplane,
    status_of,
    write_status,
)
from .promotion import can_proceed_with_promotion

log = alog.use_channel("DPBG")

ROLLOUT_INITIALIZED_MESSAGE = "Rollout initialized"
PREVIEW_DEPLOYMENT_NOT_READY_MESSAGE = "Preview Deployment not yet ready"

# Keys of the preview Services in status.rollout.services
ROLLOUT_ADMIN_SERVICE_KEY = "adminAPI"
ROLLOUT_INGRESS_SERVICE_KEY = "ingress"

_PREVIEW_SERVICE_LABELS = {SERVICE_STATE_LABEL: ServiceState.PREVIEW.value}
_PREVIEW_DEPLOYMENT_LABELS = {DEPLOYMENT_STATE_LABEL: ServiceState.PREVIEW.value}


## Status helpers ##############################################################


def patch_status_fields(
    deploy_manager: DeployManagerBase, dataplane: DataPlane, *fields: str
) -> bool:
    """Write the given top level status fields of the in-memory DataPlane on
    top of a fresh read. All other status fields are written back as stored.

    Returns:
        patched:  bool
            Whether a status patch was written
    """
    current = get_dataplane(deploy_manager, dataplane.namespace, dataplane.name)
    if current is None:
        log.debug("DataPlane %s is gone, not patching status", dataplane.name)
        return False

    current_status = current.status
    updated_status = copy.deepcopy(current_status)
    for field in fields:
        if field in dataplane.status:
            updated_status[field] = copy.deepcopy(dataplane.status[field])
        else:
            updated_status.pop(field, None)

    if not conditions.status_changed(current_status, updated_status):
        log.debug2("Status fields %s of %s are up to date", fields, dataplane.name)
        return False
    write_status(deploy_manager, current.definition, updated_status)
    return True


def rollout_status_of(dataplane: DataPlane) -> dict:
    """The mutable status.rollout dict of the DataPlane definition"""
    return status_of(dataplane).setdefault("rollout", {})


def should_delegate(dataplane: DataPlane) -> bool:
    """Whether the pass belongs to the standard reconciler.

    That is the case when the live set is up to date and the rollout waits
    for a change, when the DataPlane is not ready at its current generation,
    or when it has no Ready condition at all. When the Ready condition is for
    an older generation the standard reconciler would roll the new spec onto
    the live set, so the rollout keeps the pass.
    """
    ready, found_ready = conditions.get_condition(dataplane.definition, READY_CONDITION)
    if not found_ready:
        return True

    rolled_out, found_rolled_out = conditions.get_condition(
        dataplane.definition, ROLLED_OUT_CONDITION, ROLLOUT_CONDITIONS
    )
    ready_generation = ready.get("observedGeneration")
    if (
        found_rolled_out
        and ready_generation == rolled_out.get("observedGeneration")
        and ready_generation == dataplane.generation
        and rolled_out.get("reason") == RolloutReason.WAITING_FOR_CHANGE.value
    ):
        log.debug2("DataPlane %s is waiting for a change", dataplane.name)
        return True

    if (
        not conditions.is_ready(dataplane.definition)
        and ready_generation == dataplane.generation
    ):
        log.debug2("DataPlane %s is not ready yet", dataplane.name)
        return True
    return False


def waiting_for_change(dataplane: DataPlane) -> bool:
    """Whether the Ready and RolledOut conditions describe the same
    generation, which means the last promotion is complete
    """
    ready, found_ready = conditions.get_condition(dataplane.definition, READY_CONDITION)
    rolled_out, found_rolled_out = conditions.get_condition(
        dataplane.definition, ROLLED_OUT_CONDITION, ROLLOUT_CONDITIONS
    )
    return (
        found_ready
        and found_rolled_out
        and ready.get("observedGeneration") == rolled_out.get("observedGeneration")
    )


def preview_deployment_not_ready(deployment: dict) -> bool:
    status = deployment.get("status") or {}
    replicas = status.get("replicas") or 0
    return (
        replicas == 0
        or (status.get("availableReplicas") or 0) != replicas
        or (status.get("readyReplicas") or 0) != replicas
    )


def _requeue_if(written: bool) -> ReconciliationResult:
    if written:
        return ReconciliationResult.requeue_now()
    return ReconciliationResult.done()


## Reconciler ##################################################################


class DataPlaneBlueGreenReconciler(Reconciler):
    """Reconciler for DataPlanes that may use a Blue-Green rollout. Passes
    that do not concern the rollout are handed to the standard reconciler.
    """

    KIND = DATAPLANE_KIND

    def __init__(
        self,
        deploy_manager: DeployManagerBase,
        standard: Optional[DataPlaneReconciler] = None,
    ):
        super().__init__(deploy_manager)
        self.standard = standard or DataPlaneReconciler(deploy_manager)

    def reconcile(self, namespace: str, name: str) -> ReconciliationResult:
        dataplane = get_dataplane(self.deploy_manager, namespace, name)
        if dataplane is None:
            log.debug("DataPlane %s/%s not found, nothing to do", namespace, name)
            return ReconciliationResult.done()
        if dataplane.deletion_timestamp is not None:
            log.debug("DataPlane %s/%s is being deleted, skipping", namespace, name)
            return ReconciliationResult.done()

        if dataplane.blue_green is None:
            self.prune_preview_subresources(dataplane)
            log.debug2("No Blue-Green rollout for %s, delegating", name)
            return self.standard.reconcile(namespace, name)

        if should_delegate(dataplane):
            log.debug("Delegating %s to the standard reconciler", name)
            return self.standard.reconcile(namespace, name)

        return self.reconcile_rollout(dataplane)

    def reconcile_rollout(self, dataplane: DataPlane) -> ReconciliationResult:
        """Run the rollout sequence on a DataPlane read from the cluster"""
        result = self._prepare_rollout(dataplane)
        if result is not None:
            return result

        result = self._ensure_preview(dataplane)
        if result is not None:
            return result

        return self._promote(dataplane)

    ## Rollout conditions ######################################################

    def ensure_rolled_out_condition(
        self,
        dataplane: DataPlane,
        status: ConditionStatus,
        reason: RolloutReason,
        message: str = "",
    ) -> bool:
        """Set the RolledOut condition at the DataPlane's generation unless it
        is already set with the same status, reason and message.

        Returns:
            patched:  bool
                Whether a status patch was written
        """
        current, found = conditions.get_condition(
            dataplane.definition, ROLLED_OUT_CONDITION, ROLLOUT_CONDITIONS
        )
        if (
            found
            and current.get("observedGeneration") == dataplane.generation
            and current.get("status") == status.value
            and current.get("reason") == reason.value
            and current.get("message") == message
        ):
            return False

        log.debug(
            "Setting RolledOut=%s/%s on %s", status.value, reason.value, dataplane.name
        )
        rollout_status_of(dataplane)
        conditions.set_condition(
            dataplane.definition,
            conditions.new_condition(
                ROLLED_OUT_CONDITION, status, reason, message, dataplane.generation
            ),
            ROLLOUT_CONDITIONS,
        )
        return patch_status_fields(self.deploy_manager, dataplane, "rollout")

    @contextmanager
    def _rollout_step(self, dataplane: DataPlane, reason: RolloutReason, message: str):
        """Record RolledOut=False with the reason and message if the step
        raises. Conflicts are left to the next pass.
        """
        try:
            yield
        except ConflictError:
            raise
        except Exception:
            log.warning("Rollout of %s failed: %s", dataplane.name, message)
            self.ensure_rolled_out_condition(
                dataplane, ConditionStatus.FALSE, reason, message
            )
            raise

    ## Phases ##################################################################

    def _prepare_rollout(self, dataplane: DataPlane) -> Optional[ReconciliationResult]:
        """Keep the live Ready condition current, hand out the preview selector
        and start the RolledOut condition for a new generation
        """
        ready, found_ready = conditions.get_condition(
            dataplane.definition, READY_CONDITION
        )
        if found_ready:
            # The live set is judged at the generation it was last ready for
            result = ensure_dataplane_ready_status(
                self.deploy_manager, dataplane, ready.get("observedGeneration")
            )
            if result.requeue:
                return result

        if not dataplane.rollout_selector:
            rollout_status_of(dataplane).setdefault("deployment", {})["selector"] = str(
                uuid.uuid4()
            )
            log.debug(
                "Initialized rollout selector of %s: %s",
                dataplane.name,
                dataplane.rollout_selector,
            )
            patch_status_fields(self.deploy_manager, dataplane, "rollout")

        rolled_out, found = conditions.get_condition(
            dataplane.definition, ROLLED_OUT_CONDITION, ROLLOUT_CONDITIONS
        )
        if (
            found
            and rolled_out.get("observedGeneration") == dataplane.generation
            and rolled_out.get("reason") == RolloutReason.PROMOTION_DONE.value
        ):
            # The promotion just finished, the live set now runs this generation
            result = ensure_dataplane_ready_status(
                self.deploy_manager, dataplane, dataplane.generation
            )
            if result.requeue:
                return result
        elif not found or rolled_out.get("observedGeneration") != dataplane.generation:
            self.ensure_rolled_out_condition(
                dataplane,
                ConditionStatus.FALSE,
                RolloutReason.PROGRESSING,
                ROLLOUT_INITIALIZED_MESSAGE,
            )
        return None

    def _ensure_preview(  # pylint: disable=too-many-return-statements
        self, dataplane: DataPlane
    ) -> Optional[ReconciliationResult]:
        """Converge the preview Services, TLS Secret and Deployment and wait
        for the preview Deployment to become ready
        """
        deploy_manager = self.deploy_manager
        selector = dataplane.rollout_selector

        with self._rollout_step(
            dataplane,
            RolloutReason.FAILED,
            "failed to ensure preview Admin API Service",
        ):
            result, admin_service = ensure_admin_service(
                deploy_manager,
                dataplane,
                extra_labels=_PREVIEW_SERVICE_LABELS,
                selector=selector,
            )
        if result != OpResult.NOOP:
            log.debug(
                "Preview admin Service %s %s", admin_service["metadata"]["name"], result
            )
            return ReconciliationResult.requeue_now()

        if self._ensure_rollout_service_status(
            dataplane, ROLLOUT_ADMIN_SERVICE_KEY, admin_service
        ):
            return ReconciliationResult.requeue_now()

        admin_name = admin_service["metadata"]["name"]
        result, cert_secret = ensure_tls_secret(
            deploy_manager,
            dataplane,
            admin_api_subject(admin_name, dataplane.namespace),
            extra_labels=service_secret_labels(admin_name),
        )
        if result != OpResult.NOOP:
            log.debug("Preview certificate Secret %s", result)
            return ReconciliationResult.requeue_now()

        with self._rollout_step(
            dataplane,
            RolloutReason.FAILED,
            "failed to ensure preview ingress Service",
        ):
            result, ingress_service = ensure_ingress_service(
                deploy_manager,
                dataplane,
                extra_labels=_PREVIEW_SERVICE_LABELS,
                selector=selector,
            )
        if result != OpResult.NOOP:
            log.debug(
                "Preview ingress Service %s %s",
                ingress_service["metadata"]["name"],
                result,
            )
            return ReconciliationResult.requeue_now()

        if self._ensure_rollout_service_status(
            dataplane, ROLLOUT_INGRESS_SERVICE_KEY, ingress_service
        ):
            return ReconciliationResult.requeue_now()

        replicas = None
        if waiting_for_change(dataplane):
            plan = dataplane.rollout_resource_plan
            log.debug2("Rollout of %s waits for a change: %s", dataplane.name, plan)
            if plan == RolloutResourcePlan.DELETE_ON_PROMOTION_RECREATE_ON_ROLLOUT:
                deleted = self._delete_preview_deployments(dataplane)
                patched = self.ensure_rolled_out_condition(
                    dataplane,
                    ConditionStatus.FALSE,
                    RolloutReason.WAITING_FOR_CHANGE,
                )
                return _requeue_if(deleted or patched)
            replicas = 0

        with self._rollout_step(
            dataplane,
            RolloutReason.FAILED,
            "failed to ensure preview Deployment",
        ):
            result, deployment = ensure_deployment(
                deploy_manager,
                dataplane,
                extra_labels=_PREVIEW_DEPLOYMENT_LABELS,
                cert_secret_name=cert_secret["metadata"]["name"],
                selector=selector,
                replicas=replicas,
            )
        if result != OpResult.NOOP:
            log.debug(
                "Preview Deployment %s %s", deployment["metadata"]["name"], result
            )
            return ReconciliationResult.requeue_now()

        if nested_get(deployment, "spec.replicas") == 0:
            return _requeue_if(
                self.ensure_rolled_out_condition(
                    dataplane,
                    ConditionStatus.FALSE,
                    RolloutReason.WAITING_FOR_CHANGE,
                )
            )

        if preview_deployment_not_ready(deployment):
            log.debug(
                "Preview Deployment %s of %s is not ready yet",
                deployment["metadata"]["name"],
                dataplane.name,
            )
            return _requeue_if(
                self.ensure_rolled_out_condition(
                    dataplane,
                    ConditionStatus.FALSE,
                    RolloutReason.PROGRESSING,
                    PREVIEW_DEPLOYMENT_NOT_READY_MESSAGE,
                )
            )
        return None

    def _promote(  # pylint: disable=too-many-return-statements
        self, dataplane: DataPlane
    ) -> ReconciliationResult:
        """Switch the live Services to the preview pods, then make the preview
        Deployment the live one
        """
        if not can_proceed_with_promotion(dataplane):
            log.debug(
                "DataPlane %s is awaiting promotion (strategy %s)",
                dataplane.name,
                dataplane.promotion_strategy,
            )
            return _requeue_if(
                self.ensure_rolled_out_condition(
                    dataplane,
                    ConditionStatus.FALSE,
                    RolloutReason.AWAITING_PROMOTION,
                )
            )

        # A failed promotion keeps its reason so that the status does not flap
        rolled_out, found = conditions.get_condition(
            dataplane.definition, ROLLED_OUT_CONDITION, ROLLOUT_CONDITIONS
        )
        if (
            not found
            or rolled_out.get("reason") != RolloutReason.PROMOTION_FAILED.value
        ):
            self.ensure_rolled_out_condition(
                dataplane,
                ConditionStatus.FALSE,
                RolloutReason.PROMOTION_IN_PROGRESS,
            )

        preview_selector = dataplane.rollout_selector
        if dataplane.status_selector != preview_selector:
            with self._rollout_step(
                dataplane,
                RolloutReason.PROMOTION_FAILED,
                "failed to update DataPlane's selector",
            ):
                status_of(dataplane)["selector"] = preview_selector
                patched = patch_status_fields(
                    self.deploy_manager, dataplane, "selector"
                )
            if patched:
                log.info(
                    "Promoting preview of DataPlane %s/%s (selector %s)",
                    dataplane.namespace,
                    dataplane.name,
                    preview_selector,
                )
                return ReconciliationResult.requeue_now()

        expected_selector = {
            APP_LABEL: dataplane.name,
            SELECTOR_LABEL: preview_selector,
        }
        for service_type in (ServiceType.INGRESS, ServiceType.ADMIN):
            if not self._live_service_has_selector(
                dataplane, service_type, expected_selector
            ):
                log.debug(
                    "Live %s Service of %s does not select the preview yet, delegating",
                    service_type.value,
                    dataplane.name,
                )
                return self.standard.reconcile(dataplane.namespace, dataplane.name)

        with self._rollout_step(
            dataplane,
            RolloutReason.PROMOTION_FAILED,
            "failed to label DataPlane's preview Deployment for promotion",
        ):
            self._label_preview_deployment_live(dataplane, preview_selector)

        # A cleared selector makes the next pass hand out a new preview selector
        rollout_status_of(dataplane).setdefault("deployment", {}).pop("selector", None)
        patch_status_fields(self.deploy_manager, dataplane, "rollout")

        self.ensure_rolled_out_condition(
            dataplane, ConditionStatus.TRUE, RolloutReason.PROMOTION_DONE
        )
        self._reset_promote_when_ready(dataplane)
        self._reduce_live_deployments(dataplane)

        log.info(
            "Promotion of DataPlane %s/%s done", dataplane.namespace, dataplane.name
        )
        return ReconciliationResult.requeue_now()

    ## Steps ###################################################################

    def _ensure_rollout_service_status(
        self, dataplane: DataPlane, key: str, service: dict
    ) -> bool:
        """Publish the name and addresses of a preview Service under
        status.rollout.services

        Returns:
            patched:  bool
                Whether a status patch was written
        """
        name = nested_get(service, "metadata.name")
        addresses = addresses_from_service(service)
        if not addresses and not name:
            return False

        current = nested_get(dataplane.status, f"rollout.services.{key}") or {}
        if (
            current.get("name") == name
            and (current.get("addresses") or []) == addresses
        ):
            return False

        rollout_status_of(dataplane).setdefault("services", {})[key] = {
            "name": name,
            "addresses": addresses,
        }
        log.debug("Publishing preview %s Service %s of %s", key, name, dataplane.name)
        return patch_status_fields(self.deploy_manager, dataplane, "rollout")

    def _list_owned(
        self, dataplane: DataPlane, kind: str, labels: Dict[str, str]
    ) -> list:
        return list_owned(
            self.deploy_manager,
            kind,
            dataplane.namespace,
            dataplane.uid,
            labels=labels,
        )

    def _delete_preview_deployments(self, dataplane: DataPlane) -> bool:
        deployments = self._list_owned(
            dataplane,
            "Deployment",
            {APP_LABEL: dataplane.name, **_PREVIEW_DEPLOYMENT_LABELS},
        )
        if not deployments:
            return False
        log.debug("Deleting %d preview Deployments", len(deployments))
        delete_objects(self.deploy_manager, deployments, *dataplane.pre_delete_hooks())
        return True

    def _live_service_has_selector(
        self,
        dataplane: DataPlane,
        service_type: ServiceType,
        expected_selector: Dict[str, str],
    ) -> bool:
        labels = dict(dataplane.managed_labels())
        labels.update(
            {
                APP_LABEL: dataplane.name,
                SERVICE_TYPE_LABEL: service_type.value,
                SERVICE_STATE_LABEL: ServiceState.LIVE.value,
            }
        )
        services = self._list_owned(dataplane, "Service", labels)
        return any(
            nested_get(service, "spec.selector") == expected_selector
            for service in services
        )

    def _label_preview_deployment_live(self, dataplane: DataPlane, selector: str):
        deployments = self._list_owned(
            dataplane,
            "Deployment",
            {APP_LABEL: dataplane.name, SELECTOR_LABEL: selector},
        )
        assert_precondition(
            bool(deployments),
            f"no preview deployments found for DataPlane "
            f"{dataplane.namespace}/{dataplane.name}",
        )
        if len(deployments) > 1:
            log.info(
                "Found %d preview Deployments for %s, labelling only %s live",
                len(deployments),
                dataplane.name,
                deployments[0]["metadata"]["name"],
            )

        deployment = deployments[0]
        labels = deployment["metadata"].get("labels") or {}
        if ServiceState.decode(labels, DEPLOYMENT_STATE_LABEL) == ServiceState.LIVE:
            return

        old = copy.deepcopy(deployment)
        deployment["metadata"].setdefault("labels", {})[
            DEPLOYMENT_STATE_LABEL
        ] = ServiceState.LIVE.value
        patch_if_non_empty(self.deploy_manager, deployment, old)
        log.debug("Labelled Deployment %s live", deployment["metadata"]["name"])

    def _reset_promote_when_ready(self, dataplane: DataPlane):
        """Remove the promote-when-ready annotation so that the next rollout
        waits for a new go-ahead
        """
        current = get_dataplane(
            self.deploy_manager, dataplane.namespace, dataplane.name
        )
        if current is None or PROMOTE_WHEN_READY_ANNOTATION not in current.annotations:
            return
        old = copy.deepcopy(current.definition)
        current.definition["metadata"]["annotations"].pop(PROMOTE_WHEN_READY_ANNOTATION)
        patch_if_non_empty(self.deploy_manager, current.definition, old)

    def _reduce_live_deployments(self, dataplane: DataPlane):
        """Delete all live Deployments but the newest one"""
        deployments = self._list_owned(
            dataplane,
            "Deployment",
            {
                APP_LABEL: dataplane.name,
                DEPLOYMENT_STATE_LABEL: ServiceState.LIVE.value,
            },
        )
        if len(deployments) < 2:
            return
        ordered = newest_first(deployments)
        log.debug(
            "Keeping live Deployment %s of %s",
            ordered[0]["metadata"]["name"],
            dataplane.name,
        )
        delete_objects(
            self.deploy_manager,
            without(ordered, ordered[0]),
            *dataplane.pre_delete_hooks(),
        )

    ## Pruning #################################################################

    def prune_preview_subresources(self, dataplane: DataPlane):
        """Delete the preview Deployments, preview Services and their TLS
        Secrets of a DataPlane without a rollout, and clear status.rollout
        """
        deployments = self._list_owned(
            dataplane,
            "Deployment",
            {APP_LABEL: dataplane.name, **_PREVIEW_DEPLOYMENT_LABELS},
        )
        services = self._list_owned(
            dataplane,
            "Service",
            {APP_LABEL: dataplane.name, **_PREVIEW_SERVICE_LABELS},
        )
        secrets = []
        for service in services:
            secrets.extend(
                self._list_owned(
                    dataplane,
                    "Secret",
                    service_secret_labels(service["metadata"]["name"]),
                )
            )

        stale = deployments + services + secrets
        if stale:
            log.info(
                "Pruning %d preview objects of DataPlane %s", len(stale), dataplane.name
            )
            delete_objects(self.deploy_manager, stale, *dataplane.pre_delete_hooks())

        if dataplane.rollout_status is not None:
            status_of(dataplane).pop("rollout")
            patch_status_fields(self.deploy_manager, dataplane, "rollout")
