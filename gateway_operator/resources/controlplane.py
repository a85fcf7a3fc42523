"""
Generator for the ControlPlane controller Deployment
"""

# Standard
from typing import List, Optional
import copy

# First Party
import alog

# Local
from .. import config
from ..constants import (
    APP_LABEL,
    CLUSTER_CERT_MOUNT_PATH,
    CONTROLLER_CONTAINER_NAME,
    CONTROLPLANE_DEPLOYMENT_NAME_PREFIX,
)
from ..managed_object import ControlPlane
from .deployment import (
    DEFAULT_TERMINATION_GRACE_PERIOD_SECONDS,
    add_cluster_certificate,
    default_resources,
    default_strategy,
)
from .strategic_merge import merge_pod_template

log = alog.use_channel("GNCPD")

# Replica count of a ControlPlane that has no DataPlane to configure
REPLICAS_WHEN_NO_DATAPLANE = 0


def controlplane_image(controlplane: ControlPlane) -> str:
    template = controlplane.pod_template_spec or {}
    for container in (template.get("spec") or {}).get("containers") or []:
        if container.get("name") == CONTROLLER_CONTAINER_NAME and container.get(
            "image"
        ):
            return container["image"]
    return config.default_controlplane_image


def publish_service(namespace: str, service_name: str) -> str:
    """The namespaced name of the Service whose addresses the controller
    publishes on the resources it configures
    """
    return f"{namespace}/{service_name}"


def _field_ref_env(name: str, field_path: str) -> dict:
    return {
        "name": name,
        "valueFrom": {"fieldRef": {"apiVersion": "v1", "fieldPath": field_path}},
    }


def _controller_env(
    controlplane: ControlPlane, dataplane_service: Optional[str]
) -> List[dict]:
    env = [
        _field_ref_env("POD_NAMESPACE", "metadata.namespace"),
        _field_ref_env("POD_NAME", "metadata.name"),
    ]
    if dataplane_service:
        env.append(
            {
                "name": "CONTROLLER_PUBLISH_SERVICE",
                "value": publish_service(controlplane.namespace, dataplane_service),
            }
        )
    return env


def _admin_client_certificate_env() -> List[dict]:
    return [
        {
            "name": "CONTROLLER_KONG_ADMIN_TLS_CLIENT_CERT_FILE",
            "value": f"{CLUSTER_CERT_MOUNT_PATH}/tls.crt",
        },
        {
            "name": "CONTROLLER_KONG_ADMIN_TLS_CLIENT_KEY_FILE",
            "value": f"{CLUSTER_CERT_MOUNT_PATH}/tls.key",
        },
        {
            "name": "CONTROLLER_KONG_ADMIN_CA_CERT_FILE",
            "value": f"{CLUSTER_CERT_MOUNT_PATH}/ca.crt",
        },
    ]


def generate_controlplane_deployment(
    controlplane: ControlPlane,
    dataplane_service: Optional[str] = None,
    cert_secret_name: Optional[str] = None,
) -> dict:
    """Generate the controller Deployment for a ControlPlane

    Args:
        controlplane:  ControlPlane
            The owning ControlPlane
        dataplane_service:  Optional[str]
            The ingress Service of the configured DataPlane. Without one the
            Deployment is scaled to zero.
        cert_secret_name:  Optional[str]
            Name of the TLS Secret the controller uses as its admin API client
            certificate

    Returns:
        deployment:  dict
            The target Deployment, named by the server via generateName
    """
    pod_labels = {APP_LABEL: controlplane.name}
    labels = dict(pod_labels)
    labels.update(controlplane.managed_labels())

    pod_spec = {
        "restartPolicy": "Always",
        "terminationGracePeriodSeconds": DEFAULT_TERMINATION_GRACE_PERIOD_SECONDS,
        "dnsPolicy": "ClusterFirst",
        "schedulerName": "default-scheduler",
        "volumes": [],
        "containers": [
            {
                "name": CONTROLLER_CONTAINER_NAME,
                "image": controlplane_image(controlplane),
                "imagePullPolicy": "IfNotPresent",
                "resources": default_resources(),
                "terminationMessagePath": "/dev/termination-log",
                "terminationMessagePolicy": "File",
                "volumeMounts": [],
                "env": _controller_env(controlplane, dataplane_service),
            }
        ],
    }
    if cert_secret_name:
        add_cluster_certificate(
            pod_spec,
            cert_secret_name,
            CONTROLLER_CONTAINER_NAME,
            _admin_client_certificate_env(),
        )

    template = merge_pod_template(
        {"metadata": {"labels": copy.deepcopy(pod_labels)}, "spec": pod_spec},
        controlplane.pod_template_spec,
    )
    template.setdefault("metadata", {}).setdefault("labels", {}).update(pod_labels)

    if dataplane_service:
        replicas = controlplane.replicas
        if replicas is None:
            replicas = config.default_replicas
    else:
        replicas = REPLICAS_WHEN_NO_DATAPLANE

    deployment = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "namespace": controlplane.namespace,
            "generateName": (
                f"{CONTROLPLANE_DEPLOYMENT_NAME_PREFIX}-{controlplane.name}-"
            ),
            "labels": labels,
            "ownerReferences": [controlplane.owner_reference()],
            "finalizers": controlplane.owned_finalizers(),
        },
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": pod_labels},
            "strategy": default_strategy(),
            "template": template,
        },
    }
    log.debug4("Generated Deployment for %s: %s", controlplane.name, deployment)
    return deployment
