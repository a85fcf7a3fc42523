"""
Helper objects to represent kubernetes objects that are managed by the operator
"""
# Standard
from datetime import datetime
from typing import Dict, List, Optional
import abc
import copy

# Local
from .constants import (
    DEFAULT_ROLLOUT_RESOURCE_PLAN,
    MANAGED_BY_CONTROLPLANE,
    MANAGED_BY_DATAPLANE,
    MANAGED_BY_LABEL,
    MANAGED_BY_LABEL_LEGACY,
    PROMOTE_WHEN_READY_ANNOTATION,
    PROMOTE_WHEN_READY_TRUE,
    WAIT_FOR_OWNER_FINALIZER,
    PromotionStrategy,
    RolloutResourcePlan,
)
from .deploy_manager.owner_references import is_owned, make_owner_reference
from .exceptions import assert_config
from .reduce import PreDeleteHook, remove_wait_for_owner_finalizer
from .utils import nested_get, parse_timestamp


class ManagedObject:  # pylint: disable=too-many-instance-attributes
    """Basic struct to represent a kubernetes object read from the cluster"""

    def __init__(self, definition: dict):
        self.kind = definition.get("kind")
        self.metadata = definition.get("metadata", {})
        self.name = self.metadata.get("name")
        self.namespace = self.metadata.get("namespace")
        self.uid = self.metadata.get("uid")
        self.resource_version = self.metadata.get("resourceVersion")
        self.api_version = definition.get("apiVersion")
        self.definition = definition

        assert self.kind is not None, "No kind found"
        assert self.name is not None, "No name found"

    @property
    def labels(self) -> Dict[str, str]:
        return self.metadata.get("labels") or {}

    @property
    def annotations(self) -> Dict[str, str]:
        return self.metadata.get("annotations") or {}

    @property
    def finalizers(self) -> List[str]:
        return self.metadata.get("finalizers") or []

    @property
    def generation(self) -> int:
        return self.metadata.get("generation", 0)

    @property
    def deletion_timestamp(self) -> Optional[datetime]:
        return parse_timestamp(self.metadata.get("deletionTimestamp"))

    def get(self, *args, **kwargs):
        """Pass get calls to the objects definition"""
        return self.definition.get(*args, **kwargs)

    def __str__(self):
        return f"{self.api_version}/{self.kind}/{self.name}"

    def __repr__(self):
        return str(self)

    def __hash__(self):
        """Hash explicitly excludes the definition so that the object's
        identifier in a map can be based only on the unique identifier of the
        resource in the cluster. If the original resource did not provide a unique
        identifier then use the apiVersion, kind, and name
        """
        return hash(self.metadata.get("uid", str(self)))

    def __eq__(self, other):
        return hash(self) == hash(other)


## Owners ######################################################################


class HasOwnerReferenceSemantics(abc.ABC):
    """Interface for Managed Resources that own child objects. Each owner kind
    names the component that manages its children and derives the labels and
    ownerReferences its children carry.
    """

    # The value of the managed-by label on children of this owner
    MANAGED_BY: str = None

    # Set by ManagedObject
    definition: dict
    uid: str

    def owner_reference(self) -> dict:
        """The ownerReference entry for children of this owner"""
        return make_owner_reference(self.definition)

    def managed_labels(self) -> Dict[str, str]:
        """The labels every child of this owner carries"""
        return {MANAGED_BY_LABEL: self.MANAGED_BY}

    def legacy_managed_selector(self) -> str:
        """Selector for children created before the managed-by label moved to
        the operator prefix
        """
        return f"{MANAGED_BY_LABEL_LEGACY}={self.MANAGED_BY},!{MANAGED_BY_LABEL}"

    def owns(self, obj: dict) -> bool:
        """Whether the given object has an ownerReference to this owner"""
        return is_owned(obj, self.uid)

    def pre_delete_hooks(self) -> List[PreDeleteHook]:
        """Hooks run against a child of this owner right before it is deleted"""
        return []

    def owned_finalizers(self) -> List[str]:
        """Finalizers set on every child of this owner"""
        return []


class DataPlane(ManagedObject, HasOwnerReferenceSemantics):
    """Read-only view over a DataPlane object"""

    MANAGED_BY = MANAGED_BY_DATAPLANE

    def pre_delete_hooks(self) -> List[PreDeleteHook]:
        return [remove_wait_for_owner_finalizer]

    def owned_finalizers(self) -> List[str]:
        return [WAIT_FOR_OWNER_FINALIZER]

    @property
    def spec(self) -> dict:
        return self.definition.get("spec") or {}

    @property
    def status(self) -> dict:
        return self.definition.get("status") or {}

    ## Deployment options ######################################################

    @property
    def deployment_options(self) -> dict:
        return self.spec.get("deployment") or {}

    @property
    def pod_template_spec(self) -> Optional[dict]:
        """A copy of the user pod template overlay, if any"""
        template = self.deployment_options.get("podTemplateSpec")
        return copy.deepcopy(template) if template else None

    @property
    def replicas(self) -> Optional[int]:
        return self.deployment_options.get("replicas")

    @property
    def has_horizontal_scaling(self) -> bool:
        return bool(nested_get(self.deployment_options, "scaling.horizontalScaling"))

    @property
    def min_replicas(self) -> Optional[int]:
        return nested_get(
            self.deployment_options, "scaling.horizontalScaling.minReplicas"
        )

    ## Rollout options #########################################################

    @property
    def blue_green(self) -> Optional[dict]:
        """The Blue-Green rollout strategy, or None when rollout is disabled"""
        return nested_get(self.deployment_options, "rollout.strategy.blueGreen")

    @property
    def promotion_strategy(self) -> str:
        """The raw promotion strategy. Unset defaults to BreakBeforePromotion."""
        return nested_get(
            self.blue_green or {},
            "promotion.strategy",
            PromotionStrategy.BREAK_BEFORE_PROMOTION.value,
        )

    @property
    def rollout_resource_plan(self) -> RolloutResourcePlan:
        value = nested_get(self.blue_green or {}, "resources.plan.deployment")
        if value is None:
            return DEFAULT_ROLLOUT_RESOURCE_PLAN
        valid = [plan.value for plan in RolloutResourcePlan]
        assert_config(
            value in valid, f"unknown rollout resource plan {value!r} for {self.name}"
        )
        return RolloutResourcePlan(value)

    @property
    def promote_when_ready(self) -> bool:
        return (
            self.annotations.get(PROMOTE_WHEN_READY_ANNOTATION)
            == PROMOTE_WHEN_READY_TRUE
        )

    ## Network options #########################################################

    @property
    def ingress_service_options(self) -> dict:
        return nested_get(self.spec, "network.services.ingress", {})

    ## Status ##################################################################

    @property
    def status_selector(self) -> Optional[str]:
        return self.status.get("selector")

    @property
    def rollout_status(self) -> Optional[dict]:
        return self.status.get("rollout")

    @property
    def rollout_selector(self) -> Optional[str]:
        return nested_get(self.status, "rollout.deployment.selector")


class ControlPlane(ManagedObject, HasOwnerReferenceSemantics):
    """Read-only view over a ControlPlane object"""

    MANAGED_BY = MANAGED_BY_CONTROLPLANE

    @property
    def spec(self) -> dict:
        return self.definition.get("spec") or {}

    @property
    def status(self) -> dict:
        return self.definition.get("status") or {}

    @property
    def dataplane_name(self) -> Optional[str]:
        """The DataPlane this ControlPlane configures"""
        return self.spec.get("dataplane")

    @property
    def pod_template_spec(self) -> Optional[dict]:
        """A copy of the user pod template overlay, if any"""
        template = nested_get(self.spec, "deployment.podTemplateSpec")
        return copy.deepcopy(template) if template else None

    @property
    def replicas(self) -> Optional[int]:
        return nested_get(self.spec, "deployment.replicas")
