"""
The Duplicate Reducer: when more than one owned object matches a singleton
selector, choose one survivor and delete the rest.

Survivor rules:

* Objects that only carry the legacy managed-by label always lose to objects
  with the current label. If every candidate is legacy, one legacy object is
  kept and is relabelled on the next reconcile.
* Deployments: most available replicas, then most ready replicas.
* Services: most load balancer ingress entries, then most EndpointSlices, then
  most ready endpoints.
* Everything else, and all remaining ties: earliest creationTimestamp, then
  lexically smallest name.
"""

# Standard
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

# First Party
import alog

# Local
from .constants import (
    ENDPOINT_SLICE_SERVICE_NAME_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_LABEL_LEGACY,
    WAIT_FOR_OWNER_FINALIZER,
)
from .deploy_manager import DeployManagerBase
from .exceptions import NotFoundError, assert_cluster
from .utils import nested_get, parse_timestamp, render_label_selector

log = alog.use_channel("REDUC")

# Signature of hooks run against each object right before it is deleted
PreDeleteHook = Callable[[DeployManagerBase, dict], None]

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


## Hooks #######################################################################


def remove_wait_for_owner_finalizer(deploy_manager: DeployManagerBase, obj: dict):
    """Pre-delete hook that removes the wait-for-owner finalizer so that the
    delete is not blocked
    """
    finalizers = obj.get("metadata", {}).get("finalizers") or []
    if WAIT_FOR_OWNER_FINALIZER not in finalizers:
        return
    metadata = obj["metadata"]
    remaining = [entry for entry in finalizers if entry != WAIT_FOR_OWNER_FINALIZER]
    log.debug2(
        "Removing %s finalizer from %s/%s",
        WAIT_FOR_OWNER_FINALIZER,
        obj.get("kind"),
        metadata.get("name"),
    )
    success, _ = deploy_manager.patch_object(
        kind=obj.get("kind"),
        name=metadata.get("name"),
        namespace=metadata.get("namespace"),
        patch=[{"op": "replace", "path": "/metadata/finalizers", "value": remaining}],
        api_version=obj.get("apiVersion"),
        resource_version=metadata.get("resourceVersion"),
    )
    assert_cluster(
        success,
        f"Failed to remove {WAIT_FOR_OWNER_FINALIZER} finalizer before deletion",
    )


## Filters #####################################################################


def _is_legacy(obj: dict) -> bool:
    labels = obj.get("metadata", {}).get("labels") or {}
    return MANAGED_BY_LABEL_LEGACY in labels and MANAGED_BY_LABEL not in labels


def _age_key(obj: dict) -> tuple:
    metadata = obj.get("metadata", {})
    created = parse_timestamp(metadata.get("creationTimestamp")) or _FAR_FUTURE
    return (created, metadata.get("name", ""))


def _split_survivor(objs: List[dict], rank: Callable[[dict], tuple]) -> List[dict]:
    """Order the objects best first by rank and return all but the first"""
    if len(objs) < 2:
        return []

    legacy = [obj for obj in objs if _is_legacy(obj)]
    if legacy and len(legacy) < len(objs):
        return legacy

    ordered = sorted(objs, key=rank)
    log.debug3(
        "Keeping %s out of %d candidates",
        ordered[0].get("metadata", {}).get("name"),
        len(objs),
    )
    return ordered[1:]


def filter_secrets(secrets: List[dict]) -> List[dict]:
    """Return the Secrets to delete"""
    return _split_survivor(secrets, _age_key)


def filter_deployments(deployments: List[dict]) -> List[dict]:
    """Return the Deployments to delete"""

    def rank(deployment):
        status = deployment.get("status") or {}
        return (
            -(status.get("availableReplicas") or 0),
            -(status.get("readyReplicas") or 0),
        ) + _age_key(deployment)

    return _split_survivor(deployments, rank)


def _ready_endpoints(endpoint_slices: List[dict]) -> int:
    return sum(
        1
        for endpoint_slice in endpoint_slices
        for endpoint in endpoint_slice.get("endpoints") or []
        if nested_get(endpoint, "conditions.ready") is True
    )


def filter_services(
    services: List[dict], endpoint_slices: Dict[str, List[dict]]
) -> List[dict]:
    """Return the Services to delete

    Args:
        services:  List[dict]
            The duplicate Services
        endpoint_slices:  Dict[str, List[dict]]
            The EndpointSlices of each Service, by Service name
    """

    def rank(service):
        slices = endpoint_slices.get(service["metadata"]["name"], [])
        return (
            -len(nested_get(service, "status.loadBalancer.ingress", [])),
            -len(slices),
            -_ready_endpoints(slices),
        ) + _age_key(service)

    return _split_survivor(services, rank)


## Reducers ####################################################################


def _delete_all(
    deploy_manager: DeployManagerBase,
    objs: List[dict],
    pre_delete_hooks: List[PreDeleteHook],
):
    for obj in objs:
        kind = obj.get("kind")
        metadata = obj.get("metadata", {})
        name = metadata.get("name")
        namespace = metadata.get("namespace")

        # Re-read so that hooks act on the latest version of the object
        success, current = deploy_manager.get_object_current_state(
            kind=kind,
            name=name,
            namespace=namespace,
            api_version=obj.get("apiVersion"),
        )
        assert_cluster(success, f"Failed to read {kind} {name} before deletion")
        if current is None:
            log.debug2("%s %s already gone", kind, name)
            continue

        try:
            for hook in pre_delete_hooks:
                hook(deploy_manager, current)
        except NotFoundError:
            log.debug2("%s %s deleted concurrently", kind, name)
            continue

        success, changed = deploy_manager.delete_object(
            kind=kind,
            name=name,
            namespace=namespace,
            api_version=obj.get("apiVersion"),
        )
        assert_cluster(success, f"Failed to delete {kind} {name}")
        if changed:
            log.info("Deleted %s %s", kind, name)


def reduce_secrets(
    deploy_manager: DeployManagerBase,
    secrets: List[dict],
    *pre_delete_hooks: PreDeleteHook,
):
    """Keep the best Secret in the set and delete all the others"""
    _delete_all(deploy_manager, filter_secrets(secrets), list(pre_delete_hooks))


def reduce_deployments(
    deploy_manager: DeployManagerBase,
    deployments: List[dict],
    *pre_delete_hooks: PreDeleteHook,
):
    """Keep the best Deployment in the set and delete all the others"""
    _delete_all(deploy_manager, filter_deployments(deployments), list(pre_delete_hooks))


def reduce_services(
    deploy_manager: DeployManagerBase,
    services: List[dict],
    *pre_delete_hooks: PreDeleteHook,
):
    """Keep the best Service in the set and delete all the others. The
    EndpointSlices of each Service are listed to rank them.
    """
    endpoint_slices = {}
    for service in services:
        metadata = service["metadata"]
        success, slices = deploy_manager.filter_objects_current_state(
            kind="EndpointSlice",
            namespace=metadata.get("namespace"),
            label_selector=render_label_selector(
                {ENDPOINT_SLICE_SERVICE_NAME_LABEL: metadata["name"]}
            ),
        )
        assert_cluster(success, f"Failed to list EndpointSlices for {metadata['name']}")
        endpoint_slices[metadata["name"]] = slices
    _delete_all(
        deploy_manager,
        filter_services(services, endpoint_slices),
        list(pre_delete_hooks),
    )


def reduce_services_by_name(
    deploy_manager: DeployManagerBase,
    services: List[dict],
    name: str,
    *pre_delete_hooks: PreDeleteHook,
):
    """Delete every Service in the set except the one with the given name"""
    _delete_all(
        deploy_manager,
        [svc for svc in services if svc["metadata"]["name"] != name],
        list(pre_delete_hooks),
    )


def delete_objects(
    deploy_manager: DeployManagerBase,
    objs: List[dict],
    *pre_delete_hooks: PreDeleteHook,
):
    """Delete every object in the set, running the hooks against each first"""
    _delete_all(deploy_manager, objs, list(pre_delete_hooks))


def newest_first(objs: List[dict]) -> List[dict]:
    """Sort objects by creationTimestamp, newest first, ties by name"""

    def key(obj):
        created, name = _age_key(obj)
        if created == _FAR_FUTURE:
            return (float("inf"), name)
        return (-created.timestamp(), name)

    return sorted(objs, key=key)


def without(objs: List[dict], keep: Optional[dict]) -> List[dict]:
    """All objects other than keep, compared by uid"""
    if keep is None:
        return list(objs)
    keep_uid = keep.get("metadata", {}).get("uid")
    return [obj for obj in objs if obj.get("metadata", {}).get("uid") != keep_uid]
