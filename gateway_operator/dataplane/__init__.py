"""
Reconcilers for the DataPlane Managed Resource
"""

# Local
from .bluegreen import DataPlaneBlueGreenReconciler
from .controller import DataPlaneReconciler
from .finalizer import DataPlaneOwnedFinalizerReconciler
from .promotion import can_proceed_with_promotion
