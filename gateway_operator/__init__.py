"""
Package exports
"""

# Local
from . import conditions, config, reconcile
from .controlplane import ControlPlaneReconciler
from .dataplane import (
    DataPlaneBlueGreenReconciler,
    DataPlaneOwnedFinalizerReconciler,
    DataPlaneReconciler,
    can_proceed_with_promotion,
)
from .deploy_manager import (
    DeployManagerBase,
    DryRunDeployManager,
    OpenshiftDeployManager,
)
from .ensure import (
    ensure_admin_service,
    ensure_controlplane_deployment,
    ensure_deployment,
    ensure_ingress_service,
    ensure_tls_secret,
)
from .exceptions import assert_cluster, assert_config, assert_precondition
from .managed_object import ControlPlane, DataPlane, HasOwnerReferenceSemantics
from .patch import OpResult
from .reconcile import ReconcileManager, ReconciliationResult
from .registry import KindRegistry, default_registry
