"""
Reconciler for the ControlPlane Managed Resource
"""

# Local
from .controller import ControlPlaneReconciler
