"""
The Diff/Patch Engine: decides whether an existing owned object has drifted
from its generated target and writes the minimal patch when it has
"""

# Standard
from enum import Enum
from typing import Callable, List, Optional, Tuple
import copy

# Third Party
from kubernetes.utils import parse_quantity
import jsonpatch

# First Party
import alog

# Local
from .deploy_manager import DeployManagerBase
from .exceptions import assert_cluster

log = alog.use_channel("PATCH")


class OpResult(Enum):
    """Outcome of an ensure operation on a single owned object"""

    CREATED = "created"
    UPDATED = "updated"
    NOOP = "noop"
    DELETED = "deleted"


## Metadata ####################################################################

# Signature of the hooks that can customize the metadata comparison. A hook
# updates the existing metadata in place and returns whether it changed it.
MetaUpdateHook = Callable[[dict, dict], bool]


def ensure_object_meta_updated(
    existing: dict,
    generated: dict,
    *hooks: MetaUpdateHook,
) -> bool:
    """Enforce the labels and ownerReferences of the generated object onto the
    existing object. Labels that are not part of the generated set are kept.
    The existing object is updated in place.

    Args:
        existing:  dict
            The object read from the cluster
        generated:  dict
            The freshly generated target object
        *hooks:  MetaUpdateHook
            Extra per-kind rules, called with the existing and generated
            metadata dicts

    Returns:
        updated:  bool
            True if the existing metadata was changed
    """
    existing_meta = existing.setdefault("metadata", {})
    generated_meta = generated.get("metadata", {})
    updated = False

    generated_labels = generated_meta.get("labels") or {}
    if generated_labels:
        existing_labels = existing_meta.setdefault("labels", {})
        for key, val in generated_labels.items():
            if existing_labels.get(key) != val:
                log.debug3(
                    "Label %s drifted: %s != %s", key, existing_labels.get(key), val
                )
                existing_labels[key] = val
                updated = True

    existing_refs = existing_meta.get("ownerReferences") or []
    for ref in generated_meta.get("ownerReferences") or []:
        if ref.get("uid") not in [current.get("uid") for current in existing_refs]:
            log.debug3("Missing ownerReference to %s", ref.get("uid"))
            existing_refs.append(ref)
            existing_meta["ownerReferences"] = existing_refs
            updated = True

    for hook in hooks:
        updated = hook(existing_meta, generated_meta) or updated
    return updated


## Resources ###################################################################


def _quantities_equal(current: Optional[dict], desired: Optional[dict]) -> bool:
    current = current or {}
    desired = desired or {}
    if set(current) != set(desired):
        return False
    for name, quantity in desired.items():
        try:
            if parse_quantity(current[name]) != parse_quantity(quantity):
                return False
        except ValueError:
            if str(current[name]) != str(quantity):
                return False
    return True


def resource_requirements_equal(
    current: Optional[dict], desired: Optional[dict]
) -> bool:
    """Compare two container resource requirement dicts semantically. Quantities
    are compared by value (1000m == 1, 1Gi == 1024Mi) and a missing section is
    equal to an empty one.
    """
    current = current or {}
    desired = desired or {}
    return _quantities_equal(
        current.get("requests"), desired.get("requests")
    ) and _quantities_equal(current.get("limits"), desired.get("limits"))


def pod_templates_equal(current: Optional[dict], desired: Optional[dict]) -> bool:
    """Compare two pod templates, using resource_requirements_equal for the
    resources of each container
    """
    current = copy.deepcopy(current or {})
    desired = copy.deepcopy(desired or {})
    for container_list in ("containers", "initContainers"):
        current_containers = (current.get("spec") or {}).get(container_list) or []
        desired_containers = (desired.get("spec") or {}).get(container_list) or []
        if len(current_containers) != len(desired_containers):
            return False
        for current_container, desired_container in zip(
            current_containers, desired_containers
        ):
            if not resource_requirements_equal(
                current_container.pop("resources", None),
                desired_container.pop("resources", None),
            ):
                return False
    return current == desired


## Patching ####################################################################


def make_patch(old: dict, existing: dict) -> List[dict]:
    """Compute the JSON patch from the pre-mutation baseline to the mutated
    object. Status is never part of the patch.
    """
    old = {key: val for key, val in old.items() if key != "status"}
    existing = {key: val for key, val in existing.items() if key != "status"}
    return jsonpatch.make_patch(old, existing).patch


def patch_if_non_empty(
    deploy_manager: DeployManagerBase,
    existing: dict,
    old: dict,
) -> Tuple[OpResult, dict]:
    """Write the difference between old and existing to the cluster. If the
    difference is empty, no call is made.

    The write is conditional on the resourceVersion of old.

    Args:
        deploy_manager:  DeployManagerBase
            The client used to write the patch
        existing:  dict
            The object after in-memory mutation
        old:  dict
            The object as read from the cluster

    Returns:
        result:  OpResult
            UPDATED if a patch was written, NOOP otherwise
        obj:  dict
            The object as stored by the server after the patch, or existing
            when nothing was written
    """
    patch = make_patch(old, existing)
    kind = old.get("kind")
    metadata = old.get("metadata", {})
    name = metadata.get("name")
    if not patch:
        log.debug2("No change for %s/%s", kind, name)
        return OpResult.NOOP, existing

    log.debug3("Patching %s/%s with %s", kind, name, patch)
    success, patched = deploy_manager.patch_object(
        kind=kind,
        name=name,
        namespace=metadata.get("namespace"),
        patch=patch,
        api_version=old.get("apiVersion"),
        resource_version=metadata.get("resourceVersion"),
    )
    assert_cluster(success, f"Failed to patch {kind} {name}")
    log.info("Updated %s %s", kind, name)
    return OpResult.UPDATED, patched or existing
