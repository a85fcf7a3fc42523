"""
Generators for the DataPlane admin and ingress Services
"""

# Standard
from typing import Dict, List, Optional
import json

# First Party
import alog

# Local
from ..constants import (
    ADMIN_API_PORT,
    ADMIN_API_PORT_NAME,
    ADMIN_SERVICE_NAME_PREFIX,
    APP_LABEL,
    DEFAULT_INGRESS_PORTS,
    DEFAULT_INGRESS_SERVICE_TYPE,
    INGRESS_SERVICE_NAME_PREFIX,
    LAST_APPLIED_ANNOTATIONS_ANNOTATION,
    PROXY_PORT,
    SELECTOR_LABEL,
    SERVICE_TYPE_LABEL,
    ServiceType,
)
from ..managed_object import DataPlane

log = alog.use_channel("GNSVC")


def service_selector(dataplane: DataPlane, selector: Optional[str]) -> Dict[str, str]:
    """Pod selector of a DataPlane Service"""
    pod_selector = {APP_LABEL: dataplane.name}
    if selector:
        pod_selector[SELECTOR_LABEL] = selector
    return pod_selector


def _service_metadata(
    dataplane: DataPlane,
    service_type: ServiceType,
    extra_labels: Optional[Dict[str, str]],
) -> dict:
    labels = {APP_LABEL: dataplane.name, SERVICE_TYPE_LABEL: service_type.value}
    labels.update(dataplane.managed_labels())
    labels.update(extra_labels or {})
    return {
        "namespace": dataplane.namespace,
        "labels": labels,
        "ownerReferences": [dataplane.owner_reference()],
        "finalizers": dataplane.owned_finalizers(),
    }


## Admin #######################################################################


def generate_admin_service(
    dataplane: DataPlane,
    extra_labels: Optional[Dict[str, str]] = None,
    selector: Optional[str] = None,
) -> dict:
    """Generate the headless admin API Service of a DataPlane.

    Not-ready addresses are published so that a control plane can push its
    configuration before the proxy pods report ready.
    """
    metadata = _service_metadata(dataplane, ServiceType.ADMIN, extra_labels)
    metadata["generateName"] = f"{ADMIN_SERVICE_NAME_PREFIX}-{dataplane.name}-"
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": metadata,
        "spec": {
            "type": "ClusterIP",
            "clusterIP": "None",
            "selector": service_selector(dataplane, selector),
            "publishNotReadyAddresses": True,
            "ports": [
                {
                    "name": ADMIN_API_PORT_NAME,
                    "protocol": "TCP",
                    "port": ADMIN_API_PORT,
                    "targetPort": ADMIN_API_PORT,
                }
            ],
        },
    }


## Ingress #####################################################################


def ingress_service_name(dataplane: DataPlane) -> Optional[str]:
    """The fixed name of the ingress Service, if the DataPlane sets one"""
    return dataplane.ingress_service_options.get("name") or None


def ingress_service_ports(dataplane: DataPlane) -> List[dict]:
    """Ports of the ingress Service. User ports replace the defaults; a port
    number listed twice is only kept the first time.
    """
    user_ports = dataplane.ingress_service_options.get("ports") or []
    if not user_ports:
        return [
            {
                "name": name,
                "protocol": "TCP",
                "port": port,
                "targetPort": target_port,
            }
            for name, port, target_port in DEFAULT_INGRESS_PORTS
        ]

    ports = []
    seen = set()
    for user_port in user_ports:
        if user_port.get("port") in seen:
            continue
        seen.add(user_port.get("port"))
        port = {
            "name": user_port.get("name"),
            "protocol": "TCP",
            "port": user_port.get("port"),
            "targetPort": user_port.get("targetPort") or PROXY_PORT,
        }
        if user_port.get("nodePort"):
            port["nodePort"] = user_port["nodePort"]
        ports.append(port)
    return ports


def generate_ingress_service(
    dataplane: DataPlane,
    extra_labels: Optional[Dict[str, str]] = None,
    selector: Optional[str] = None,
) -> dict:
    """Generate the ingress (proxy) Service of a DataPlane.

    The user's annotations are recorded as JSON in the last-applied
    annotations annotation so that annotations dropped from the DataPlane can
    be told apart from annotations added by other actors.
    """
    options = dataplane.ingress_service_options
    metadata = _service_metadata(dataplane, ServiceType.INGRESS, extra_labels)

    name = ingress_service_name(dataplane)
    if name:
        metadata["name"] = name
    else:
        metadata["generateName"] = f"{INGRESS_SERVICE_NAME_PREFIX}-{dataplane.name}-"

    annotations = dict(options.get("annotations") or {})
    if annotations:
        annotations[LAST_APPLIED_ANNOTATIONS_ANNOTATION] = json.dumps(
            options.get("annotations"), sort_keys=True
        )
        metadata["annotations"] = annotations

    spec = {
        "type": options.get("type") or DEFAULT_INGRESS_SERVICE_TYPE,
        "selector": service_selector(dataplane, selector),
        "ports": ingress_service_ports(dataplane),
    }
    if options.get("externalTrafficPolicy"):
        spec["externalTrafficPolicy"] = options["externalTrafficPolicy"]

    service = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": metadata,
        "spec": spec,
    }
    log.debug4("Generated ingress Service for %s: %s", dataplane.name, service)
    return service
