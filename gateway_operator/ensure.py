"""
The Ensure-Resource Operations: keep each singleton object owned by a Managed
Resource converged with its generated target.

Every operation follows the same sequence:

1. List the owned candidates with the full expected label set, including the
   ones that still carry the legacy managed-by label.
2. Release the owner's finalizers from candidates that are being deleted.
   If any were released, return DELETED so that the caller ends the cycle and
   the replacement is created on the next one.
3. If there is more than one, reduce them and raise ResourceCountReducedError
   so that the caller ends the cycle.
4. Generate the target.
5. With one candidate, enforce the target onto it and patch only if something
   changed. With none, create the target.

A candidate that disappears while it is being patched is recreated.
"""

# Standard
from typing import Callable, Dict, List, Optional, Tuple
import copy
import json

# First Party
import alog

# Local
from . import config
from .constants import (
    DEFAULT_EXTERNAL_TRAFFIC_POLICY,
    LAST_APPLIED_ANNOTATIONS_ANNOTATION,
    MANAGED_BY_LABEL,
    RESTARTED_AT_ANNOTATION,
    SERVICE_TYPE_LABEL,
    ServiceType,
)
from .deploy_manager import DeployManagerBase, list_owned
from .exceptions import (
    NotFoundError,
    ResourceCountReducedError,
    assert_cluster,
    assert_precondition,
)
from .managed_object import (
    ControlPlane,
    DataPlane,
    HasOwnerReferenceSemantics,
    ManagedObject,
)
from .patch import (
    OpResult,
    ensure_object_meta_updated,
    patch_if_non_empty,
    pod_templates_equal,
)
from .reduce import (
    reduce_deployments,
    reduce_secrets,
    reduce_services,
    reduce_services_by_name,
)
from .resources import (
    generate_admin_service,
    generate_controlplane_deployment,
    generate_deployment,
    generate_ingress_service,
    generate_tls_secret,
    ingress_service_name,
)
from .resources.secrets import certificate_needs_renewal
from .utils import nested_get, now, parse_timestamp, render_label_selector

log = alog.use_channel("ENSUR")

## Shared ######################################################################


def list_candidates(
    deploy_manager: DeployManagerBase,
    owner: HasOwnerReferenceSemantics,
    kind: str,
    labels: Dict[str, str],
) -> List[dict]:
    """List the objects of a kind owned by the owner that carry the labels.
    Objects labelled with the legacy managed-by label instead of the current
    one are included.
    """
    candidates = list_owned(
        deploy_manager, kind, owner.namespace, owner.uid, labels=labels
    )
    other_labels = {key: val for key, val in labels.items() if key != MANAGED_BY_LABEL}
    legacy_selector = ",".join(
        selector
        for selector in [
            owner.legacy_managed_selector(),
            render_label_selector(other_labels),
        ]
        if selector
    )
    candidates.extend(
        list_owned(
            deploy_manager,
            kind,
            owner.namespace,
            owner.uid,
            label_selector=legacy_selector,
        )
    )
    return candidates


def _create(
    deploy_manager: DeployManagerBase, generated: dict
) -> Tuple[OpResult, dict]:
    kind = generated.get("kind")
    success, created = deploy_manager.create_object(generated)
    assert_cluster(success, f"Failed to create {kind}")
    log.info(
        "Created %s %s/%s",
        kind,
        nested_get(created, "metadata.namespace"),
        nested_get(created, "metadata.name"),
    )
    return OpResult.CREATED, created


def _patch_or_create(
    deploy_manager: DeployManagerBase,
    existing: dict,
    old: dict,
    generated: dict,
) -> Tuple[OpResult, dict]:
    try:
        return patch_if_non_empty(deploy_manager, existing, old)
    except NotFoundError:
        log.debug(
            "%s %s vanished while being patched, recreating",
            old.get("kind"),
            nested_get(old, "metadata.name"),
        )
        return _create(deploy_manager, generated)


def release_terminating(
    deploy_manager: DeployManagerBase,
    owner: HasOwnerReferenceSemantics,
    candidates: List[dict],
) -> Tuple[List[dict], Optional[dict]]:
    """Split off the candidates that are being deleted. The owner's finalizers
    are released from them so that their deletion completes.

    Returns:
        live:  List[dict]
            The candidates that are not being deleted
        released:  Optional[dict]
            The first candidate whose finalizers were released, if any
    """
    live, released = [], None
    owned_finalizers = set(owner.owned_finalizers())
    for candidate in candidates:
        managed = ManagedObject(candidate)
        if managed.deletion_timestamp is None:
            live.append(candidate)
            continue
        if not owned_finalizers.intersection(managed.finalizers):
            continue
        log.info(
            "Releasing terminating %s %s/%s",
            candidate.get("kind"),
            owner.namespace,
            nested_get(candidate, "metadata.name"),
        )
        for hook in owner.pre_delete_hooks():
            hook(deploy_manager, candidate)
        released = released or candidate
    return live, released


def _ensure_singleton(
    deploy_manager: DeployManagerBase,
    owner: HasOwnerReferenceSemantics,
    kind: str,
    candidates: List[dict],
    reduce: Callable,
) -> Optional[dict]:
    """Reduce the live candidates if needed. Returns the single existing object
    or None.
    """
    if len(candidates) > 1:
        log.debug(
            "Found %d %s objects for %s, reducing", len(candidates), kind, owner.name
        )
        reduce(deploy_manager, candidates, *owner.pre_delete_hooks())
        raise ResourceCountReducedError(kind, owner.name)
    return candidates[0] if candidates else None


def _managed_labels(
    owner: HasOwnerReferenceSemantics, *label_sets: Optional[Dict[str, str]]
) -> Dict[str, str]:
    labels = dict(owner.managed_labels())
    for label_set in label_sets:
        labels.update(label_set or {})
    return labels


## Deployment ##################################################################


def _strip_restart_annotation(template: dict) -> dict:
    template = copy.deepcopy(template or {})
    annotations = (template.get("metadata") or {}).get("annotations")
    if annotations is not None:
        annotations.pop(RESTARTED_AT_ANNOTATION, None)
        if not annotations:
            template["metadata"].pop("annotations")
    return template


def recent_restart(template: dict) -> Optional[str]:
    """The restartedAt annotation of the pod template if the restart happened
    within recent_restart_seconds. An unparsable timestamp counts as recent.
    """
    restarted_at = nested_get(template or {}, "metadata.annotations", {}).get(
        RESTARTED_AT_ANNOTATION
    )
    if not restarted_at:
        return None
    restart_time = parse_timestamp(restarted_at)
    if restart_time is None:
        return restarted_at
    if (now() - restart_time).total_seconds() < config.recent_restart_seconds:
        return restarted_at
    log.debug2("Ignoring stale restart annotation %s", restarted_at)
    return None


def _enforce_deployment(existing: dict, generated: dict):
    """Enforce the metadata, pod template and strategy of the generated
    Deployment onto the existing one
    """
    ensure_object_meta_updated(existing, generated)
    existing_spec = existing.setdefault("spec", {})
    generated_spec = generated["spec"]

    if not pod_templates_equal(
        _strip_restart_annotation(existing_spec.get("template")),
        _strip_restart_annotation(generated_spec["template"]),
    ):
        log.debug("Pod template of %s drifted", existing["metadata"]["name"])
        restarted_at = recent_restart(existing_spec.get("template"))
        if restarted_at:
            generated_spec["template"]["metadata"].setdefault("annotations", {})[
                RESTARTED_AT_ANNOTATION
            ] = restarted_at
        existing_spec["template"] = generated_spec["template"]

    if existing_spec.get("strategy") != generated_spec["strategy"]:
        log.debug("Strategy of %s drifted", existing["metadata"]["name"])
        existing_spec["strategy"] = generated_spec["strategy"]


def _enforce_replicas(
    dataplane: DataPlane,
    existing_spec: dict,
    generated_spec: dict,
    replicas: Optional[int],
):
    if replicas is not None:
        existing_spec["replicas"] = replicas
        return
    if not dataplane.has_horizontal_scaling:
        if "replicas" in generated_spec:
            existing_spec["replicas"] = generated_spec["replicas"]
        return
    min_replicas = dataplane.min_replicas
    current = existing_spec.get("replicas")
    if min_replicas is not None and current is not None and min_replicas > current:
        existing_spec["replicas"] = min_replicas


def ensure_deployment(  # pylint: disable=too-many-arguments
    deploy_manager: DeployManagerBase,
    dataplane: DataPlane,
    extra_labels: Optional[Dict[str, str]] = None,
    cert_secret_name: Optional[str] = None,
    selector: Optional[str] = None,
    replicas: Optional[int] = None,
) -> Tuple[OpResult, dict]:
    """Ensure the single proxy Deployment of the DataPlane with the given extra
    labels

    Args:
        deploy_manager:  DeployManagerBase
            The cluster client
        dataplane:  DataPlane
            The owning DataPlane
        extra_labels:  Optional[Dict[str, str]]
            Labels narrowing the singleton, e.g. the deployment state
        cert_secret_name:  Optional[str]
            The TLS Secret mounted as the cluster certificate
        selector:  Optional[str]
            The selector uuid of the pods
        replicas:  Optional[int]
            Replica count that overrides the DataPlane's scaling options

    Returns:
        result:  OpResult
            CREATED, UPDATED, NOOP, or DELETED when a terminating
            Deployment was released
        deployment:  dict
            The Deployment as stored in the cluster
    """
    labels = _managed_labels(dataplane, extra_labels)
    candidates, released = release_terminating(
        deploy_manager,
        dataplane,
        list_candidates(deploy_manager, dataplane, "Deployment", labels),
    )
    if released is not None:
        return OpResult.DELETED, released
    existing = _ensure_singleton(
        deploy_manager, dataplane, "Deployment", candidates, reduce_deployments
    )

    generated = generate_deployment(
        dataplane,
        cert_secret_name=cert_secret_name,
        extra_labels=extra_labels,
        selector=selector,
    )
    if replicas is not None:
        generated["spec"]["replicas"] = replicas

    if existing is None:
        return _create(deploy_manager, generated)

    old = copy.deepcopy(existing)
    _enforce_deployment(existing, generated)
    _enforce_replicas(dataplane, existing["spec"], generated["spec"], replicas)
    return _patch_or_create(deploy_manager, existing, old, generated)


def ensure_controlplane_deployment(
    deploy_manager: DeployManagerBase,
    controlplane: ControlPlane,
    dataplane_service: Optional[str] = None,
    cert_secret_name: Optional[str] = None,
) -> Tuple[OpResult, dict]:
    """Ensure the single controller Deployment of the ControlPlane. The replica
    count is always enforced, so the Deployment scales to zero while there is
    no DataPlane service to publish.
    """
    labels = _managed_labels(controlplane)
    candidates, released = release_terminating(
        deploy_manager,
        controlplane,
        list_candidates(deploy_manager, controlplane, "Deployment", labels),
    )
    if released is not None:
        return OpResult.DELETED, released
    existing = _ensure_singleton(
        deploy_manager, controlplane, "Deployment", candidates, reduce_deployments
    )

    generated = generate_controlplane_deployment(
        controlplane,
        dataplane_service=dataplane_service,
        cert_secret_name=cert_secret_name,
    )
    if existing is None:
        return _create(deploy_manager, generated)

    old = copy.deepcopy(existing)
    _enforce_deployment(existing, generated)
    existing["spec"]["replicas"] = generated["spec"]["replicas"]
    return _patch_or_create(deploy_manager, existing, old, generated)


## Services ####################################################################


def ensure_admin_service(
    deploy_manager: DeployManagerBase,
    dataplane: DataPlane,
    extra_labels: Optional[Dict[str, str]] = None,
    selector: Optional[str] = None,
) -> Tuple[OpResult, dict]:
    """Ensure the single headless admin API Service of the DataPlane with the
    given extra labels
    """
    labels = _managed_labels(
        dataplane, {SERVICE_TYPE_LABEL: ServiceType.ADMIN.value}, extra_labels
    )
    candidates, released = release_terminating(
        deploy_manager,
        dataplane,
        list_candidates(deploy_manager, dataplane, "Service", labels),
    )
    if released is not None:
        return OpResult.DELETED, released
    existing = _ensure_singleton(
        deploy_manager, dataplane, "Service", candidates, reduce_services
    )

    generated = generate_admin_service(
        dataplane, extra_labels=extra_labels, selector=selector
    )
    if existing is None:
        return _create(deploy_manager, generated)

    old = copy.deepcopy(existing)
    ensure_object_meta_updated(existing, generated)
    existing_spec = existing.setdefault("spec", {})
    for field in ("type", "selector"):
        if existing_spec.get(field) != generated["spec"][field]:
            log.debug(
                "Admin Service %s field %s drifted", old["metadata"]["name"], field
            )
            existing_spec[field] = generated["spec"][field]

    return _patch_or_create(deploy_manager, existing, old, generated)


def ensure_annotations_updated(existing_meta: dict, generated_meta: dict) -> bool:
    """Metadata hook enforcing the user's annotations from the generated
    Service. Annotations listed in the existing last-applied annotation but no
    longer wanted are removed. Annotations added by other actors are kept.
    """
    existing_annotations = existing_meta.get("annotations") or {}
    wanted = dict(generated_meta.get("annotations") or {})

    last_applied = {}
    if LAST_APPLIED_ANNOTATIONS_ANNOTATION in existing_annotations:
        try:
            last_applied = json.loads(
                existing_annotations[LAST_APPLIED_ANNOTATIONS_ANNOTATION]
            )
        except ValueError:
            log.warning(
                "Unparsable %s annotation on %s",
                LAST_APPLIED_ANNOTATIONS_ANNOTATION,
                existing_meta.get("name"),
            )

    updated = dict(existing_annotations)
    for key in last_applied:
        if key not in wanted:
            updated.pop(key, None)
    if LAST_APPLIED_ANNOTATIONS_ANNOTATION not in wanted:
        updated.pop(LAST_APPLIED_ANNOTATIONS_ANNOTATION, None)
    updated.update(wanted)

    if updated == existing_annotations:
        return False
    if updated:
        existing_meta["annotations"] = updated
    else:
        existing_meta.pop("annotations", None)
    return True


_COMPARED_PORT_FIELDS = ("name", "protocol", "port", "targetPort", "appProtocol")


def ports_equal(existing_ports: List[dict], generated_ports: List[dict]) -> bool:
    """Compare Service ports field by field. The nodePort of a port is only
    compared when the generated port sets one.
    """
    existing_ports = existing_ports or []
    generated_ports = generated_ports or []
    if len(existing_ports) != len(generated_ports):
        return False
    for current, desired in zip(existing_ports, generated_ports):
        for field in _COMPARED_PORT_FIELDS:
            if current.get(field) != desired.get(field):
                return False
        if desired.get("nodePort") and current.get("nodePort") != desired["nodePort"]:
            return False
    return True


def _ensure_external_traffic_policy(existing_spec: dict, generated_spec: dict):
    current = existing_spec.get("externalTrafficPolicy", "")
    desired = generated_spec.get("externalTrafficPolicy", "")
    enforced = current != DEFAULT_EXTERNAL_TRAFFIC_POLICY or desired not in (
        "",
        DEFAULT_EXTERNAL_TRAFFIC_POLICY,
    )
    if not enforced or current == desired:
        return
    if desired:
        existing_spec["externalTrafficPolicy"] = desired
    else:
        existing_spec.pop("externalTrafficPolicy", None)


def ensure_ingress_service(
    deploy_manager: DeployManagerBase,
    dataplane: DataPlane,
    extra_labels: Optional[Dict[str, str]] = None,
    selector: Optional[str] = None,
) -> Tuple[OpResult, dict]:
    """Ensure the single ingress (proxy) Service of the DataPlane with the
    given extra labels. When the DataPlane fixes the Service name, only the
    Service with that name survives a reduction.
    """
    labels = _managed_labels(
        dataplane, {SERVICE_TYPE_LABEL: ServiceType.INGRESS.value}, extra_labels
    )
    candidates, released = release_terminating(
        deploy_manager,
        dataplane,
        list_candidates(deploy_manager, dataplane, "Service", labels),
    )
    if released is not None:
        return OpResult.DELETED, released

    name = ingress_service_name(dataplane)
    if name and (
        len(candidates) > 1
        or (len(candidates) == 1 and candidates[0]["metadata"]["name"] != name)
    ):
        log.debug("Keeping only ingress Service %s for %s", name, dataplane.name)
        reduce_services_by_name(
            deploy_manager, candidates, name, *dataplane.pre_delete_hooks()
        )
        raise ResourceCountReducedError("Service", dataplane.name)
    existing = _ensure_singleton(
        deploy_manager, dataplane, "Service", candidates, reduce_services
    )

    generated = generate_ingress_service(
        dataplane, extra_labels=extra_labels, selector=selector
    )
    if existing is None:
        return _create(deploy_manager, generated)

    old = copy.deepcopy(existing)
    ensure_object_meta_updated(existing, generated, ensure_annotations_updated)
    existing_spec = existing.setdefault("spec", {})
    generated_spec = generated["spec"]

    if existing_spec.get("type") != generated_spec["type"]:
        existing_spec["type"] = generated_spec["type"]
    _ensure_external_traffic_policy(existing_spec, generated_spec)
    if existing_spec.get("selector") != generated_spec["selector"]:
        existing_spec["selector"] = generated_spec["selector"]
    if not ports_equal(existing_spec.get("ports"), generated_spec["ports"]):
        log.debug("Ports of ingress Service %s drifted", old["metadata"]["name"])
        existing_spec["ports"] = generated_spec["ports"]

    return _patch_or_create(deploy_manager, existing, old, generated)


## TLS Secret ##################################################################


def _read_cluster_ca(deploy_manager: DeployManagerBase) -> Optional[dict]:
    name = config.cluster_ca_secret_name
    if not name:
        return None
    namespace = config.cluster_ca_secret_namespace
    success, ca_secret = deploy_manager.get_object_current_state(
        kind="Secret", name=name, namespace=namespace
    )
    assert_cluster(success, f"Failed to read cluster CA Secret {namespace}/{name}")
    assert_precondition(
        ca_secret is not None, f"cluster CA Secret {namespace}/{name} not found"
    )
    return ca_secret


def ensure_tls_secret(
    deploy_manager: DeployManagerBase,
    owner: HasOwnerReferenceSemantics,
    subject: str,
    extra_labels: Optional[Dict[str, str]] = None,
) -> Tuple[OpResult, dict]:
    """Ensure the single TLS Secret of the owner with the given extra labels
    holds a valid certificate for the subject.

    A Secret whose certificate is broken, is for another subject or is about
    to expire is deleted, and its replacement is created on the next call.
    """
    labels = _managed_labels(owner, extra_labels)
    candidates, released = release_terminating(
        deploy_manager,
        owner,
        list_candidates(deploy_manager, owner, "Secret", labels),
    )
    if released is not None:
        return OpResult.DELETED, released
    existing = _ensure_singleton(
        deploy_manager, owner, "Secret", candidates, reduce_secrets
    )

    if existing is not None and certificate_needs_renewal(existing, subject):
        name = existing["metadata"]["name"]
        log.info("Replacing certificate Secret %s for %s", name, subject)
        for hook in owner.pre_delete_hooks():
            hook(deploy_manager, existing)
        success, _ = deploy_manager.delete_object(
            kind="Secret", name=name, namespace=owner.namespace
        )
        assert_cluster(success, f"Failed to delete Secret {name}")
        return OpResult.DELETED, existing

    if existing is None:
        generated = generate_tls_secret(
            owner,
            subject,
            extra_labels=extra_labels,
            ca_secret=_read_cluster_ca(deploy_manager),
        )
        return _create(deploy_manager, generated)

    # Only the metadata of a valid Secret is enforced
    generated_meta = {
        "metadata": {
            "labels": labels,
            "ownerReferences": [owner.owner_reference()],
        }
    }
    old = copy.deepcopy(existing)
    ensure_object_meta_updated(existing, generated_meta)
    return patch_if_non_empty(deploy_manager, existing, old)
