"""
Strategic merge of a user-provided pod template overlay onto a generated pod
template. Lists of named elements (containers, volumes, env, ...) are aligned
by their merge key and merged element by element. Every other list is
replaced by the overlay.
"""

# Standard
from collections import OrderedDict
from typing import Dict, Optional
import copy

# First Party
import alog

log = alog.use_channel("SMERG")

# Root position of a pod template
POD_TEMPLATE = "PodTemplateSpec"

# Merge keys for the lists of a pod template, by dotted position. Nested list
# elements do not add to the position.
POD_TEMPLATE_MERGE_KEYS = {
    f"{POD_TEMPLATE}.spec.containers": "name",
    f"{POD_TEMPLATE}.spec.initContainers": "name",
    f"{POD_TEMPLATE}.spec.volumes": "name",
    f"{POD_TEMPLATE}.spec.imagePullSecrets": "name",
    f"{POD_TEMPLATE}.spec.containers.env": "name",
    f"{POD_TEMPLATE}.spec.containers.ports": "containerPort",
    f"{POD_TEMPLATE}.spec.containers.volumeMounts": "mountPath",
    f"{POD_TEMPLATE}.spec.initContainers.env": "name",
    f"{POD_TEMPLATE}.spec.initContainers.volumeMounts": "mountPath",
}

_DIRECTIVE_KEY = "$patch"
_DIRECTIVE_REPLACE = "replace"
_DIRECTIVE_MERGE = "merge"
_DIRECTIVE_DELETE = "delete"


def merge_pod_template(
    pod_template: dict,
    overlay: Optional[dict],
    merge_keys: Dict[str, str] = None,
) -> dict:
    """Merge the overlay onto a copy of the pod template

    Args:
        pod_template:  dict
            The generated pod template
        overlay:  Optional[dict]
            The user's pod template fields
        merge_keys:  Dict[str, str]
            Merge keys for list positions, defaults to POD_TEMPLATE_MERGE_KEYS

    Returns:
        merged:  dict
            The merged pod template. Neither input is modified.
    """
    if not overlay:
        return copy.deepcopy(pod_template)
    if merge_keys is None:
        merge_keys = POD_TEMPLATE_MERGE_KEYS
    return _merge(
        copy.deepcopy(pod_template),
        copy.deepcopy(overlay),
        POD_TEMPLATE,
        merge_keys,
    )


def _merge(current, desired, position: str, merge_keys: Dict[str, str]):
    if isinstance(desired, dict) and isinstance(current, dict):
        for key, val in desired.items():
            if val is None:
                current.pop(key, None)
            elif key not in current:
                current[key] = val
            else:
                current[key] = _merge(
                    current[key], val, f"{position}.{key}", merge_keys
                )
        return current

    if isinstance(desired, list) and isinstance(current, list):
        merge_key = merge_keys.get(position)
        if not merge_key:
            log.debug4("Replacing list at [%s]", position)
            return desired

        for itm in current + desired:
            if not isinstance(itm, dict) or merge_key not in itm:
                raise ValueError(
                    f"List at [{position}] contains elements without [{merge_key}]"
                )

        merged = OrderedDict((itm[merge_key], itm) for itm in current)
        for itm in desired:
            item_key = itm[merge_key]
            directive = itm.pop(_DIRECTIVE_KEY, _DIRECTIVE_MERGE)
            log.debug4("Element [%s] at [%s]: %s", item_key, position, directive)
            if directive == _DIRECTIVE_DELETE:
                merged.pop(item_key, None)
            elif directive == _DIRECTIVE_REPLACE or item_key not in merged:
                merged[item_key] = itm
            elif directive == _DIRECTIVE_MERGE:
                merged[item_key] = _merge(merged[item_key], itm, position, merge_keys)
            else:
                raise ValueError(f"Invalid directive: [{directive}]")
        return list(merged.values())

    return desired
