"""
Pure generators for the objects owned by DataPlanes and ControlPlanes
"""

# Local
from .controlplane import generate_controlplane_deployment
from .deployment import dataplane_image, generate_deployment
from .secrets import admin_api_subject, generate_tls_secret
from .services import (
    generate_admin_service,
    generate_ingress_service,
    ingress_service_name,
)
