"""
Reconciler releasing the wait-for-owner finalizer from the Deployments,
Services and Secrets of a DataPlane once their owner no longer needs them
"""

# Standard
from typing import Optional

# First Party
import alog

# Local
from ..constants import (
    MANAGED_BY_DATAPLANE,
    MANAGED_BY_LABEL,
    WAIT_FOR_OWNER_FINALIZER,
)
from ..deploy_manager import DeployManagerBase, controller_reference
from ..exceptions import assert_cluster
from ..managed_object import ManagedObject
from ..reconcile import ReconciliationResult, Reconciler, RequeueParams
from ..reduce import remove_wait_for_owner_finalizer
from ..utils import now
from .controller import DATAPLANE_KIND, get_dataplane

log = alog.use_channel("DPFIN")

# The kinds that carry the finalizer
OWNED_KINDS = ("Deployment", "Service", "Secret")


class DataPlaneOwnedFinalizerReconciler(Reconciler):
    """Reconciler for a single owned kind. An owned object that is being
    deleted keeps the finalizer while its DataPlane is alive. The finalizer is
    removed once the DataPlane is gone or is itself being deleted.
    """

    def __init__(self, deploy_manager: DeployManagerBase, kind: str = "Deployment"):
        super().__init__(deploy_manager)
        assert kind in OWNED_KINDS, f"Unsupported owned kind {kind}"
        self.KIND = kind  # pylint: disable=invalid-name

    def reconcile(self, namespace: str, name: str) -> ReconciliationResult:
        success, content = self.deploy_manager.get_object_current_state(
            kind=self.KIND, name=name, namespace=namespace
        )
        assert_cluster(success, f"Failed to fetch {self.KIND} {namespace}/{name}")
        if content is None:
            log.debug2("%s %s/%s not found", self.KIND, namespace, name)
            return ReconciliationResult.done()

        owned = ManagedObject(content)
        deletion_timestamp = owned.deletion_timestamp
        if deletion_timestamp is None:
            return ReconciliationResult.done()

        remaining = deletion_timestamp - now()
        if remaining.total_seconds() > 0:
            log.debug("%s %s/%s deletion is scheduled", self.KIND, namespace, name)
            return ReconciliationResult(
                requeue=True, requeue_params=RequeueParams(requeue_after=remaining)
            )

        if WAIT_FOR_OWNER_FINALIZER not in owned.finalizers:
            return ReconciliationResult.done()

        owner_name = self._owner_name(owned)
        if owner_name is None:
            log.debug2("%s %s/%s has no DataPlane owner", self.KIND, namespace, name)
            return ReconciliationResult.done()

        dataplane = get_dataplane(self.deploy_manager, namespace, owner_name)
        if dataplane is not None and dataplane.deletion_timestamp is None:
            log.debug(
                "Keeping %s on %s %s/%s, DataPlane %s is alive",
                WAIT_FOR_OWNER_FINALIZER,
                self.KIND,
                namespace,
                name,
                owner_name,
            )
            return ReconciliationResult.done()

        log.info(
            "Releasing %s %s/%s of DataPlane %s", self.KIND, namespace, name, owner_name
        )
        remove_wait_for_owner_finalizer(self.deploy_manager, content)
        return ReconciliationResult.done()

    @staticmethod
    def _owner_name(owned: ManagedObject) -> Optional[str]:
        if owned.labels.get(MANAGED_BY_LABEL) != MANAGED_BY_DATAPLANE:
            return None
        ref = controller_reference(owned.definition)
        if ref is None or ref.get("kind") != DATAPLANE_KIND:
            return None
        return ref.get("name")
