"""
This module holds the Owner Index: helpers that build ownerReferences for
Managed Resources and decide which listed objects belong to a given owner
"""

# Standard
from typing import Dict, List, Optional

# First Party
import alog

# Local
from ..exceptions import assert_cluster
from ..utils import render_label_selector
from .base import DeployManagerBase

log = alog.use_channel("OWNRF")


def make_owner_reference(owner: dict) -> dict:
    """Make an owner reference for the given Managed Resource instance

    Error Semantics: This function makes a best-effort and does not validate the
    content of the owner, so the resulting ownerReference may contain None
    entries.

    Args:
        owner:  dict
            The full manifest for the owning resource

    Returns:
        owner_reference:  dict
            The dict entry for the `metadata.ownerReferences` entry of the owned
            object
    """
    metadata = owner.get("metadata", {})
    return {
        "apiVersion": owner.get("apiVersion"),
        "kind": owner.get("kind"),
        "name": metadata.get("name"),
        "uid": metadata.get("uid"),
        "controller": True,
        # The parent will not be deleted until this object completes its
        # deletion
        "blockOwnerDeletion": True,
    }


def controller_reference(obj: dict) -> Optional[dict]:
    """The ownerReference of the object marked as its controller, if any"""
    owner_refs = (obj.get("metadata") or {}).get("ownerReferences") or []
    for ref in owner_refs:
        if ref.get("controller"):
            return ref
    return None


def is_owned(candidate: dict, owner_uid: str) -> bool:
    """Determine whether the candidate carries an ownerReference to the owner
    with the given uid

    Args:
        candidate:  dict
            The object to inspect
        owner_uid:  str
            The uid of the prospective owner

    Returns:
        owned:  bool
            True iff one of the candidate's ownerReferences has owner_uid
    """
    owner_refs = (candidate.get("metadata") or {}).get("ownerReferences") or []
    return any(ref.get("uid") == owner_uid for ref in owner_refs)


def list_owned(  # pylint: disable=too-many-arguments
    deploy_manager: DeployManagerBase,
    kind: str,
    namespace: str,
    owner_uid: str,
    labels: Optional[Dict[str, str]] = None,
    api_version: Optional[str] = None,
    label_selector: Optional[str] = None,
) -> List[dict]:
    """List the objects of a kind in a namespace that match the label set and
    are owned by the given owner

    Args:
        deploy_manager:  DeployManagerBase
            The client used to list candidates
        kind:  str
            The kind to list
        namespace:  str
            The namespace to list in
        owner_uid:  str
            The uid the candidates must reference
        labels:  Optional[Dict[str, str]]
            Equality label set the candidates must carry
        api_version:  Optional[str]
            The apiVersion of the kind
        label_selector:  Optional[str]
            A raw selector string used instead of labels

    Returns:
        owned:  List[dict]
            The owned objects
    """
    if label_selector is None:
        label_selector = render_label_selector(labels)
    success, candidates = deploy_manager.filter_objects_current_state(
        kind=kind,
        namespace=namespace,
        api_version=api_version,
        label_selector=label_selector or None,
    )
    assert_cluster(
        success, f"Failed to list {kind} objects in {namespace} for {owner_uid}"
    )
    owned = [candidate for candidate in candidates if is_owned(candidate, owner_uid)]
    log.debug2(
        "Found %d/%d %s objects owned by %s with [%s]",
        len(owned),
        len(candidates),
        kind,
        owner_uid,
        label_selector,
    )
    return owned
