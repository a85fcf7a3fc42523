"""
The DryRunDeployManager implements the DeployManager interface but does not
actually interact with the cluster and instead holds the state of the cluster in
a local map.
"""

# Standard
from threading import RLock
from typing import List, Optional
import copy
import itertools
import operator
import random
import string
import uuid

# Third Party
import jsonpatch

# First Party
import alog

# Local
from ..exceptions import ConflictError, NotFoundError
from ..registry import KindRegistry, default_registry
from ..utils import format_timestamp, now
from .base import DeployManagerBase

log = alog.use_channel("DRY-RUN")

# Lock to ensure writes are thread safe
DRY_RUN_CLUSTER_LOCK = RLock()

# Metadata fields the server owns and a patch can not change
_IMMUTABLE_METADATA = ["name", "namespace", "uid", "creationTimestamp"]

_GENERATE_NAME_SUFFIX_LEN = 5


class DryRunDeployManager(DeployManagerBase):
    """
    Deploy manager which doesn't actually deploy!
    """

    def __init__(
        self,
        resources: Optional[List[dict]] = None,
        registry: Optional[KindRegistry] = None,
    ):
        """Construct with an optional set of objects that are already present
        in the simulated cluster
        """
        self._registry = registry or default_registry()
        self._cluster_content = {}
        self._resource_versions = itertools.count(1)
        self._cluster_ips = itertools.count(1)
        for resource in resources or []:
            self.create_object(resource)

    ## Interface ###############################################################

    def get_object_current_state(self, kind, name, namespace=None, api_version=None):
        log.debug2(
            "DRY RUN get_object_current_state of [%s/%s] in [%s]", kind, name, namespace
        )

        # Look in the cluster state
        matches = []
        kind_entries = self._cluster_content.get(namespace, {}).get(kind, {})
        for api_ver, entries in kind_entries.items():
            if name in entries and (api_ver == api_version or api_version is None):
                matches.append(entries[name])
        log.debug3(
            "Found %d matches for [%s/%s] in %s", len(matches), kind, name, namespace
        )
        if len(matches) == 1:
            return True, copy.deepcopy(matches[0])
        return True, None

    def filter_objects_current_state(
        self,
        kind,
        namespace=None,
        api_version=None,
        label_selector=None,
        field_selector=None,
    ):  # pylint: disable=too-many-arguments
        log.debug2(
            "DRY RUN filter_objects_current_state of [%s] in [%s] with [%s]",
            kind,
            namespace,
            label_selector,
        )
        matches = []
        kind_entries = self._cluster_content.get(namespace, {}).get(kind, {})
        for api_ver, entries in kind_entries.items():
            if api_ver != api_version and api_version is not None:
                continue

            for resource in entries.values():
                labels = resource.get("metadata", {}).get("labels", {})
                if label_selector and not _match_selector(labels, label_selector):
                    continue

                if field_selector and not _match_selector(
                    _convert_dict_to_dot(resource),
                    field_selector,
                ):
                    continue

                matches.append(copy.deepcopy(resource))

        return True, matches

    def create_object(self, definition):
        resource = copy.deepcopy(definition)
        kind = resource.get("kind")
        if not resource.get("apiVersion"):
            resource["apiVersion"] = self._registry.api_version(kind)
        api_version = resource["apiVersion"]
        metadata = resource.setdefault("metadata", {})
        namespace = metadata.get("namespace")

        with DRY_RUN_CLUSTER_LOCK:
            entries = (
                self._cluster_content.setdefault(namespace, {})
                .setdefault(kind, {})
                .setdefault(api_version, {})
            )
            name = metadata.get("name")
            if not name:
                name = self._generate_name(metadata.get("generateName", ""), entries)
                metadata["name"] = name
            if name in entries:
                raise ConflictError(f"{kind} {namespace}/{name} already exists")

            metadata.setdefault("uid", str(uuid.uuid4()))
            metadata.setdefault("creationTimestamp", format_timestamp(now()))
            metadata.setdefault("generation", 1)
            metadata["resourceVersion"] = self._next_resource_version()
            self._apply_server_defaults(resource)

            log.debug(
                "DRY RUN create [%s/%s/%s/%s]", namespace, kind, api_version, name
            )
            log.debug4(resource)
            entries[name] = resource
            return True, copy.deepcopy(resource)

    def patch_object(
        self,
        kind,
        name,
        namespace,
        patch,
        api_version=None,
        resource_version=None,
    ):  # pylint: disable=too-many-arguments
        with DRY_RUN_CLUSTER_LOCK:
            current = self._get_for_write(
                kind, name, namespace, api_version, resource_version
            )
            try:
                patched = jsonpatch.apply_patch(current, patch)
            except (
                jsonpatch.JsonPatchException,
                jsonpatch.JsonPointerException,
            ) as err:
                log.warning("Unable to apply patch to %s/%s: %s", kind, name, err)
                return False, None

            # The main resource endpoint does not change metadata owned by the
            # server or the status subresource
            for field in _IMMUTABLE_METADATA:
                if field in current["metadata"]:
                    patched["metadata"][field] = current["metadata"][field]
            if "status" in current:
                patched["status"] = current["status"]
            else:
                patched.pop("status", None)
            if patched.get("spec") != current.get("spec"):
                patched["metadata"]["generation"] = (
                    current["metadata"].get("generation", 1) + 1
                )

            log.debug("DRY RUN patch [%s/%s/%s]", namespace, kind, name)
            log.debug4(patch)
            return True, self._store(patched)

    def patch_status(
        self,
        kind,
        name,
        namespace,
        patch,
        api_version=None,
        resource_version=None,
    ):  # pylint: disable=too-many-arguments
        with DRY_RUN_CLUSTER_LOCK:
            current = self._get_for_write(
                kind, name, namespace, api_version, resource_version
            )
            try:
                patched = jsonpatch.apply_patch(current, patch)
            except (
                jsonpatch.JsonPatchException,
                jsonpatch.JsonPointerException,
            ) as err:
                log.warning(
                    "Unable to apply status patch to %s/%s: %s", kind, name, err
                )
                return False, None

            # The status subresource only changes status
            updated = copy.deepcopy(current)
            if "status" in patched:
                updated["status"] = patched["status"]
            else:
                updated.pop("status", None)

            log.debug("DRY RUN patch_status [%s/%s/%s]", namespace, kind, name)
            log.debug4(patch)
            return True, self._store(updated)

    def delete_object(self, kind, name, namespace=None, api_version=None):
        with DRY_RUN_CLUSTER_LOCK:
            _, current = self.get_object_current_state(
                kind, name, namespace, api_version
            )
            if current is None:
                log.debug2("DRY RUN delete of missing [%s/%s]", kind, name)
                return True, False

            metadata = current["metadata"]
            if metadata.get("finalizers"):
                log.debug(
                    "DRY RUN marking [%s/%s] deleted, waiting on %s",
                    kind,
                    name,
                    metadata["finalizers"],
                )
                if not metadata.get("deletionTimestamp"):
                    metadata["deletionTimestamp"] = format_timestamp(now())
                    metadata["deletionGracePeriodSeconds"] = 0
                    self._store(current)
                return True, True

            log.debug("DRY RUN delete [%s/%s/%s]", namespace, kind, name)
            self._delete_key(namespace, kind, current["apiVersion"], name)
            return True, True

    ## Dry Run Methods #########################################################

    def set_status(self, kind, name, namespace, status, api_version=None):
        """Overwrite the status of an object the way a cluster controller would
        (for example, the Deployment controller publishing replica counts)
        """
        log.debug(
            "DRY RUN set_status of [%s/%s] in %s: %s", kind, name, namespace, status
        )
        with DRY_RUN_CLUSTER_LOCK:
            _, current = self.get_object_current_state(
                kind, name, namespace, api_version
            )
            if current is None:
                log.debug("Did not find [%s/%s] in %s", kind, name, namespace)
                return False, False
            prev_status = current.get("status")
            current["status"] = status
            self._store(current)
            return True, prev_status != status

    ## Implementation Details ##################################################

    def _next_resource_version(self) -> str:
        return str(next(self._resource_versions))

    @staticmethod
    def _generate_name(prefix: str, entries: dict) -> str:
        assert prefix, "Object has neither a name nor a generateName"
        while True:
            name = prefix + "".join(
                random.choices(
                    string.ascii_lowercase + string.digits, k=_GENERATE_NAME_SUFFIX_LEN
                )
            )
            if name not in entries:
                return name

    def _apply_server_defaults(self, resource: dict):
        """Simulate the values the API server assigns on create"""
        if resource.get("kind") == "Service":
            spec = resource.setdefault("spec", {})
            if not spec.get("clusterIP") and spec.get("type") != "ExternalName":
                spec["clusterIP"] = f"10.96.0.{next(self._cluster_ips)}"

    def _get_for_write(self, kind, name, namespace, api_version, resource_version):
        _, current = self.get_object_current_state(kind, name, namespace, api_version)
        if current is None:
            raise NotFoundError(f"{kind} {namespace}/{name} not found")
        current_version = current["metadata"].get("resourceVersion")
        if resource_version is not None and resource_version != current_version:
            log.debug(
                "DRY RUN conflict on [%s/%s]: %s != %s",
                kind,
                name,
                resource_version,
                current_version,
            )
            raise ConflictError(
                f"{kind} {namespace}/{name} has been modified: "
                f"resourceVersion {resource_version} != {current_version}"
            )
        return current

    def _store(self, resource: dict) -> Optional[dict]:
        """Store an updated object with a new resourceVersion. An object that
        is marked deleted and has no finalizers left is removed instead.
        """
        metadata = resource["metadata"]
        namespace = metadata.get("namespace")
        kind = resource["kind"]
        api_version = resource["apiVersion"]
        name = metadata["name"]
        if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
            log.debug2("DRY RUN finalizers cleared for [%s/%s]", kind, name)
            self._delete_key(namespace, kind, api_version, name)
            return copy.deepcopy(resource)
        metadata["resourceVersion"] = self._next_resource_version()
        self._cluster_content[namespace][kind][api_version][name] = resource
        return copy.deepcopy(resource)

    def _delete_key(self, namespace, kind, api_version, name):
        del self._cluster_content[namespace][kind][api_version][name]
        if not self._cluster_content[namespace][kind][api_version]:
            del self._cluster_content[namespace][kind][api_version]
        if not self._cluster_content[namespace][kind]:
            del self._cluster_content[namespace][kind]
        if not self._cluster_content[namespace]:
            del self._cluster_content[namespace]


def _match_selector(values, value_selector) -> bool:  # pylint: disable=too-many-locals
    """This function implements the kubernetes selector to determine if
    a set of values matches the selector. For the complete documentation regarding
    selectors see:
    https://kubernetes.io/docs/concepts/overview/working-with-objects/labels/#syntax-and-character-set
    """
    log.debug3("DRY RUN match_selector [%s/%s]", values, value_selector)

    equality_ops = ["=", "==", "!="]
    # The spaces distinguish the set operators from label text
    set_ops = [" in ", " notin "]
    existence_ops = ["!", ""]

    def _in(a, b):  # pylint: disable=invalid-name
        return a in b

    def not_in(a, b):  # pylint: disable=invalid-name
        return not _in(a, b)

    def exists(a, _):  # pylint: disable=invalid-name
        return a is not None

    def not_exists(a, _):  # pylint: disable=invalid-name
        return a is None

    operator_actions = {
        "=": operator.eq,
        "==": operator.eq,
        "!=": operator.ne,
        " in ": _in,
        " notin ": not_in,
        "!": not_exists,
        "": exists,
    }

    # Longest operators first so that != is tried before =
    operator_list = sorted(operator_actions.keys(), key=len, reverse=True)

    for selector in _split_selectors(value_selector):
        action = None
        expected_key = None
        expected_value = None

        for op in operator_list:  # pylint: disable=invalid-name
            if op in existence_ops:
                split_selector = [selector.replace(op, "")]
            else:
                split_selector = selector.split(op)

            if (op in equality_ops or op in set_ops) and len(split_selector) != 2:
                continue

            if (op == "!") and "!" not in selector:
                continue

            action = operator_actions[op]
            expected_key = split_selector[0].strip()

            if op in equality_ops:
                expected_value = split_selector[1].strip()
            elif op in set_ops:
                string_value = split_selector[1].replace("(", "").replace(")", "")
                expected_value = [val.strip() for val in string_value.split(",")]
            break

        value = values.get(expected_key)
        value = str(value).strip() if value is not None else value

        if not action(value, expected_value):
            log.debug4(
                "Label with key: %s and value: %s does not match selector %s",
                expected_key,
                value,
                selector,
            )
            return False

    return True


def _split_selectors(selector=""):
    """Split up selectors by , but ignoring those surrounded by () e.g.
    'app,app in (frontend, backend)' becomes ['app','app in (frontend, backend)']
    """
    output_list = []
    current_selector = ""
    in_paren = False

    for char in selector:
        if char == "," and not in_paren:
            output_list.append(current_selector)
            current_selector = ""
            continue

        if char == "(" and not in_paren:
            in_paren = True
        elif char == ")" and in_paren:
            in_paren = False

        current_selector += char

    if current_selector:
        output_list.append(current_selector)

    return output_list


def _convert_dict_to_dot(dictionary, prefix=""):
    """Helper function to convert a dictionary to a map
    of strings dotted together. For example {a:{b:1},c:2}
    becomes {a.b:1,c:2}
    """
    if not isinstance(dictionary, dict):
        return {prefix: dictionary}

    output_dict = {}
    for key in dictionary:
        new_key = key if prefix == "" else f"{prefix}.{key}"
        output_dict = {**output_dict, **_convert_dict_to_dot(dictionary[key], new_key)}
    return output_dict
