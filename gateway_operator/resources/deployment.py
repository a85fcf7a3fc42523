"""
Generator for the DataPlane proxy Deployment
"""

# Standard
from typing import Dict, List, Optional
import copy

# First Party
import alog

# Local
from .. import config
from ..constants import (
    ADMIN_API_PORT,
    APP_LABEL,
    CLUSTER_CERT_MOUNT_PATH,
    CLUSTER_CERT_VOLUME_NAME,
    DEFAULT_CPU_LIMIT,
    DEFAULT_CPU_REQUEST,
    DEFAULT_MEMORY_LIMIT,
    DEFAULT_MEMORY_REQUEST,
    DEPLOYMENT_NAME_PREFIX,
    PROXY_CONTAINER_NAME,
    PROXY_PORT,
    PROXY_SSL_PORT,
    SELECTOR_LABEL,
    STATUS_PORT,
)
from ..managed_object import DataPlane
from .strategic_merge import merge_pod_template

log = alog.use_channel("GNDEP")

# Endpoint of the status listener used for readiness
STATUS_READY_PATH = "/status/ready"

DEFAULT_TERMINATION_GRACE_PERIOD_SECONDS = 30

# Default secret volume file mode (0644)
DEFAULT_SECRET_VOLUME_MODE = 420


def default_resources() -> dict:
    """The resource requirements of the proxy container when the user sets
    none
    """
    return {
        "requests": {"cpu": DEFAULT_CPU_REQUEST, "memory": DEFAULT_MEMORY_REQUEST},
        "limits": {"cpu": DEFAULT_CPU_LIMIT, "memory": DEFAULT_MEMORY_LIMIT},
    }


def default_strategy() -> dict:
    """Rolling update that never takes a ready pod away before its replacement
    is up
    """
    return {
        "type": "RollingUpdate",
        "rollingUpdate": {"maxUnavailable": 0, "maxSurge": 1},
    }


def dataplane_image(dataplane: DataPlane) -> str:
    """The image of the proxy container in the user's pod template, falling
    back to the configured default image
    """
    template = dataplane.pod_template_spec or {}
    for container in (template.get("spec") or {}).get("containers") or []:
        if container.get("name") == PROXY_CONTAINER_NAME and container.get("image"):
            return container["image"]
    return config.default_image


def generate_replicas(dataplane: DataPlane) -> Optional[int]:
    """Replica count of a freshly generated Deployment.

    An explicit replica count wins when no horizontal scaling is configured.
    With horizontal scaling, minReplicas is used so the Deployment scales up
    before the autoscaler acts. When neither is set the configured default is
    used.
    """
    if dataplane.replicas is not None and not dataplane.has_horizontal_scaling:
        return dataplane.replicas
    if dataplane.replicas is None and dataplane.has_horizontal_scaling:
        return dataplane.min_replicas
    if dataplane.replicas is None:
        return config.default_replicas
    return None


def _proxy_container(image: str) -> dict:
    return {
        "name": PROXY_CONTAINER_NAME,
        "image": image,
        "imagePullPolicy": "IfNotPresent",
        "lifecycle": {
            "preStop": {"exec": {"command": ["/bin/sh", "-c", "kong quit"]}},
        },
        "ports": [
            {"name": "proxy", "containerPort": PROXY_PORT, "protocol": "TCP"},
            {"name": "proxy-ssl", "containerPort": PROXY_SSL_PORT, "protocol": "TCP"},
            {"name": "metrics", "containerPort": STATUS_PORT, "protocol": "TCP"},
            {"name": "admin-ssl", "containerPort": ADMIN_API_PORT, "protocol": "TCP"},
        ],
        "readinessProbe": {
            "failureThreshold": 3,
            "initialDelaySeconds": 5,
            "periodSeconds": 10,
            "successThreshold": 1,
            "timeoutSeconds": 1,
            "httpGet": {
                "path": STATUS_READY_PATH,
                "port": STATUS_PORT,
                "scheme": "HTTP",
            },
        },
        "resources": default_resources(),
        "terminationMessagePath": "/dev/termination-log",
        "terminationMessagePolicy": "File",
        "volumeMounts": [],
        "env": [],
    }


def add_cluster_certificate(
    pod_spec: dict, cert_secret_name: str, container_name: str, env: List[dict]
):
    """Mount the TLS Secret as the cluster certificate into the named container
    and add the env vars pointing the container at it
    """
    pod_spec["volumes"].append(
        {
            "name": CLUSTER_CERT_VOLUME_NAME,
            "secret": {
                "secretName": cert_secret_name,
                "defaultMode": DEFAULT_SECRET_VOLUME_MODE,
                "items": [
                    {"key": "tls.crt", "path": "tls.crt"},
                    {"key": "tls.key", "path": "tls.key"},
                    {"key": "ca.crt", "path": "ca.crt"},
                ],
            },
        }
    )
    for container in pod_spec["containers"]:
        if container["name"] != container_name:
            continue
        container["volumeMounts"].append(
            {
                "name": CLUSTER_CERT_VOLUME_NAME,
                "mountPath": CLUSTER_CERT_MOUNT_PATH,
                "readOnly": True,
            }
        )
        container["env"].extend(copy.deepcopy(env))


def _proxy_certificate_env() -> List[dict]:
    return [
        {"name": "KONG_CLUSTER_CERT", "value": f"{CLUSTER_CERT_MOUNT_PATH}/tls.crt"},
        {
            "name": "KONG_CLUSTER_CERT_KEY",
            "value": f"{CLUSTER_CERT_MOUNT_PATH}/tls.key",
        },
    ]


def generate_deployment(
    dataplane: DataPlane,
    cert_secret_name: Optional[str] = None,
    extra_labels: Optional[Dict[str, str]] = None,
    selector: Optional[str] = None,
) -> dict:
    """Generate the proxy Deployment for a DataPlane

    Args:
        dataplane:  DataPlane
            The owning DataPlane
        cert_secret_name:  Optional[str]
            Name of the TLS Secret mounted as the cluster certificate
        extra_labels:  Optional[Dict[str, str]]
            Labels added to the Deployment on top of the managed labels (e.g.
            the deployment state)
        selector:  Optional[str]
            The selector uuid added to the Deployment and pod labels and to the
            Deployment selector

    Returns:
        deployment:  dict
            The target Deployment. Its name is left to the server via
            generateName.
    """
    pod_labels = {APP_LABEL: dataplane.name}
    if selector:
        pod_labels[SELECTOR_LABEL] = selector

    labels = {APP_LABEL: dataplane.name}
    labels.update(dataplane.managed_labels())
    labels.update(extra_labels or {})
    if selector:
        labels[SELECTOR_LABEL] = selector

    pod_spec = {
        "securityContext": {},
        "restartPolicy": "Always",
        "terminationGracePeriodSeconds": DEFAULT_TERMINATION_GRACE_PERIOD_SECONDS,
        "dnsPolicy": "ClusterFirst",
        "schedulerName": "default-scheduler",
        "volumes": [],
        "containers": [_proxy_container(dataplane_image(dataplane))],
    }
    if cert_secret_name:
        add_cluster_certificate(
            pod_spec, cert_secret_name, PROXY_CONTAINER_NAME, _proxy_certificate_env()
        )

    template = merge_pod_template(
        {"metadata": {"labels": copy.deepcopy(pod_labels)}, "spec": pod_spec},
        dataplane.pod_template_spec,
    )
    # The selector labels cannot be overridden
    template.setdefault("metadata", {}).setdefault("labels", {}).update(pod_labels)

    spec = {
        "selector": {"matchLabels": pod_labels},
        "strategy": default_strategy(),
        "template": template,
    }
    replicas = generate_replicas(dataplane)
    if replicas is not None:
        spec["replicas"] = replicas

    deployment = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "namespace": dataplane.namespace,
            "generateName": f"{DEPLOYMENT_NAME_PREFIX}-{dataplane.name}-",
            "labels": labels,
            "ownerReferences": [dataplane.owner_reference()],
            "finalizers": dataplane.owned_finalizers(),
        },
        "spec": spec,
    }
    log.debug4("Generated Deployment for %s: %s", dataplane.name, deployment)
    return deployment
