"""
This DeployManager is responsible for delegating cluster operations to the
openshift library. It is the one that will be used when the operator is running
in the cluster or outside the cluster making live changes.
"""
# Standard
from typing import Callable, List, Optional, Tuple
import time

# Third Party
from openshift.dynamic import DynamicClient
from openshift.dynamic.exceptions import ConflictError as ClientConflictError
from openshift.dynamic.exceptions import (
    DynamicApiError,
    ForbiddenError,
    InternalServerError,
)
from openshift.dynamic.exceptions import NotFoundError as ClientNotFoundError
from openshift.dynamic.exceptions import (
    ResourceNotFoundError,
    ResourceNotUniqueError,
    ServerTimeoutError,
    ServiceUnavailableError,
    TooManyRequestsError,
)
from openshift.dynamic.resource import Resource
import kubernetes

# First Party
import alog

# Local
from .. import config
from ..exceptions import ConflictError, NotFoundError, assert_cluster
from ..registry import KindRegistry, default_registry
from .base import DeployManagerBase

log = alog.use_channel("OSFTD")

# Server errors that are retried in place with backoff
_TRANSIENT_ERRORS = (
    TooManyRequestsError,
    ServerTimeoutError,
    ServiceUnavailableError,
    InternalServerError,
)

_JSON_PATCH_CONTENT_TYPE = "application/json-patch+json"

## Deploy Manager ##############################################################


class OpenshiftDeployManager(DeployManagerBase):
    """This DeployManager uses the openshift DynamicClient to interact with the
    cluster
    """

    def __init__(self, registry: Optional[KindRegistry] = None):
        """
        Args:
            registry:  Optional[KindRegistry]
                The kind registry used to resolve apiVersions that are not
                given explicitly
        """
        self._registry = registry or default_registry()

        # Set up the client
        log.debug("Initializing openshift client")
        self._client = None

    @property
    def client(self):
        """Lazy property access to the client"""
        if self._client is None:
            self._client = self._setup_client()
        return self._client

    def get_object_current_state(
        self,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
    ) -> Tuple[bool, Optional[dict]]:
        # Use the lazy discovery tool to first get all objects of the given type
        # in the given namespace, then look for the specific resource by name
        resources = self._get_resource_handle(kind, api_version)
        if not resources:
            return True, None

        if not namespace:
            resources.namespaced = False

        try:
            resource = resources.get(name=name, namespace=namespace)
        except ForbiddenError:
            log.debug(
                "Fetching objects of kind [%s] forbidden in namespace [%s]",
                kind,
                namespace,
            )
            return False, None
        except ClientNotFoundError:
            log.debug(
                "No object named [%s/%s] found in namespace [%s]", kind, name, namespace
            )
            return True, None

        # If the resource was found, return it's dict representation
        return True, resource.to_dict()

    def filter_objects_current_state(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
        label_selector: Optional[str] = None,
        field_selector: Optional[str] = None,
    ) -> Tuple[bool, List[dict]]:
        resources = self._get_resource_handle(kind, api_version)
        if not resources:
            return True, []

        if not namespace:
            resources.namespaced = False

        try:
            list_obj = resources.get(
                label_selector=label_selector,
                field_selector=field_selector,
                namespace=namespace,
            )
        except ForbiddenError:
            log.debug(
                "Fetching objects of kind [%s] forbidden in namespace [%s]",
                kind,
                namespace,
            )
            return False, []
        except ClientNotFoundError:
            log.debug(
                "No objects of kind [%s] found in namespace [%s]", kind, namespace
            )
            return True, []

        # If the resource was found, get it's dict representation
        resource_list = list_obj.to_dict().get("items", [])
        return True, resource_list

    @alog.logged_function(log.debug)
    def create_object(self, definition: dict) -> Tuple[bool, Optional[dict]]:
        kind = definition.get("kind")
        api_version = definition.get("apiVersion") or self._registry.api_version(kind)
        metadata = definition.get("metadata", {})
        namespace = metadata.get("namespace")
        handle = self._require_resource_handle(kind, api_version, namespace)

        log.debug2(
            "Attempting to create [%s/%s/%s] in %s",
            api_version,
            kind,
            metadata.get("name") or metadata.get("generateName"),
            namespace,
        )
        return self._run_with_retries(
            lambda: handle.create(body=definition, namespace=namespace)
        )

    @alog.logged_function(log.debug)
    def patch_object(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        name: str,
        namespace: Optional[str],
        patch: List[dict],
        api_version: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> Tuple[bool, Optional[dict]]:
        handle = self._require_resource_handle(kind, api_version, namespace)
        body = self._guard_resource_version(patch, resource_version)
        log.debug2("Attempting to patch [%s/%s] in %s", kind, name, namespace)
        log.debug4(body)
        return self._run_with_retries(
            lambda: handle.patch(
                body=body,
                name=name,
                namespace=namespace,
                content_type=_JSON_PATCH_CONTENT_TYPE,
            )
        )

    @alog.logged_function(log.debug)
    def patch_status(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        name: str,
        namespace: Optional[str],
        patch: List[dict],
        api_version: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> Tuple[bool, Optional[dict]]:
        handle = self._require_resource_handle(kind, api_version, namespace)
        body = self._guard_resource_version(patch, resource_version)
        log.debug2("Attempting to patch status of [%s/%s] in %s", kind, name, namespace)
        log.debug4(body)
        return self._run_with_retries(
            lambda: handle.status.patch(
                body=body,
                name=name,
                namespace=namespace,
                content_type=_JSON_PATCH_CONTENT_TYPE,
            )
        )

    @alog.logged_function(log.debug)
    def delete_object(
        self,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
    ) -> Tuple[bool, bool]:
        resources = self._get_resource_handle(kind, api_version)
        if not resources:
            log.debug2("Kind [%s] not served, nothing to delete", kind)
            return True, False
        if not namespace:
            resources.namespaced = False

        log.debug2("Attempting to delete [%s/%s] from %s", kind, name, namespace)
        try:
            success, _ = self._run_with_retries(
                lambda: resources.delete(name=name, namespace=namespace)
            )
        except NotFoundError as err:
            log.debug2("Valid error caught when deleting [%s/%s]: %s", kind, name, err)
            return True, False
        return success, success

    ## Implementation Helpers ##################################################

    @staticmethod
    def _setup_client():
        """Create a DynamicClient that will work based on where the operator is
        running
        """
        # Try in-cluster config
        try:
            log.debug2("Running with in-cluster config")

            # Create Empty Config and load in-cluster information
            kube_config = kubernetes.client.Configuration()
            kubernetes.config.load_incluster_config(client_configuration=kube_config)

            # Generate ApiClient and return Openshift DynamicClient
            api_client = kubernetes.client.ApiClient(kube_config)
            return DynamicClient(api_client)

        # Fall back to out-of-cluster config
        except kubernetes.config.ConfigException:
            log.debug2("Running with out-of-cluster config")
            return DynamicClient(kubernetes.config.new_client_from_config())

    def _get_resource_handle(
        self, kind: str, api_version: Optional[str]
    ) -> Optional[Resource]:
        """Get the openshift resource handle for a specified kind and api_version"""
        if api_version is None and kind in self._registry:
            api_version = self._registry.api_version(kind)
        resources = None
        try:
            resources = self.client.resources.get(kind=kind, api_version=api_version)
        except (ResourceNotFoundError, ResourceNotUniqueError):
            try:
                resources = self.client.resources.get(
                    short_names=[kind], api_version=api_version
                )
            except (ResourceNotFoundError, ResourceNotUniqueError):
                log.debug(
                    "No objects of kind [%s] found or multiple objects matching "
                    "request found",
                    kind,
                )
        return resources

    def _require_resource_handle(
        self, kind: str, api_version: Optional[str], namespace: Optional[str]
    ) -> Resource:
        resources = self._get_resource_handle(kind, api_version)
        assert_cluster(
            resources,
            f"Failed to fetch resource handle for {namespace}/{api_version}/{kind}",
        )
        if not namespace:
            resources.namespaced = False
        return resources

    @staticmethod
    def _guard_resource_version(
        patch: List[dict], resource_version: Optional[str]
    ) -> List[dict]:
        """Make the patch conditional on the resourceVersion that was read. The
        API server rejects the update with a 409 when the stored object has a
        different resourceVersion.
        """
        if resource_version is None:
            return list(patch)
        return [
            {
                "op": "replace",
                "path": "/metadata/resourceVersion",
                "value": resource_version,
            }
        ] + list(patch)

    def _run_with_retries(
        self,
        operation: Callable,
        remaining_retries: Optional[int] = None,
    ) -> Tuple[bool, Optional[dict]]:
        """Run a single write against the cluster. Transient server errors are
        retried with a linear backoff. Conflict and not-found responses are
        translated to the library's own exceptions. Any other API failure is
        reported as an unsuccessful write.

        Args:
            operation:  Callable
                Zero-argument callable performing the client call
            remaining_retries:  Optional[int]
                The number of remaining retries. Defaults to the configured
                deploy_retries.

        Returns:
            success:  bool
                Whether or not the write succeeded
            content:  dict or None
                The object as returned by the server
        """
        if remaining_retries is None:
            remaining_retries = config.deploy_retries
        try:
            result = operation()
        except ClientConflictError as err:
            log.debug2("Handling ConflictError: %s", err)
            raise ConflictError(str(err)) from err
        except ClientNotFoundError as err:
            log.debug2("Handling NotFoundError: %s", err)
            raise NotFoundError(str(err)) from err
        except _TRANSIENT_ERRORS as err:
            if not remaining_retries:
                log.warning("Out of retries for transient error: %s", err)
                return False, None

            # Sleep for the backoff duration
            backoff_duration = config.retry_backoff_base_seconds * (
                config.deploy_retries - remaining_retries + 1
            )
            log.debug3("Retrying in %fs after: %s", backoff_duration, err)
            time.sleep(backoff_duration)
            return self._run_with_retries(operation, remaining_retries - 1)
        except DynamicApiError as err:
            log.warning("Operation failed to execute: %s", err, exc_info=True)
            return False, None

        if result is None:
            return True, None
        return True, result.to_dict()
