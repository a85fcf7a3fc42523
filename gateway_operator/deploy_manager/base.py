"""
This defines the base class for all DeployManager types.
"""

# Standard
from typing import List, Optional, Tuple
import abc


class DeployManagerBase(abc.ABC):
    """
    Base class for deploy managers which are responsible for carrying out all
    reads and writes against the cluster.

    Reads return a (success, content) pair. Writes are conditional on the
    resourceVersion the caller read and raise ConflictError when the object has
    moved on, or NotFoundError when it is gone. Any other failure is reported
    through the success flag.
    """

    @abc.abstractmethod
    def get_object_current_state(
        self,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
    ) -> Tuple[bool, Optional[dict]]:
        """Fetch the current state of a given object by name

        Args:
            kind:  str
                The kind of the object to fetch
            name:  str
                The full name of the object to fetch
            namespace:  str
                The namespace to search for the object
            api_version:  str
                The api_version of the resource kind to fetch

        Returns:
            success:  bool
                Whether or not the state fetch operation succeeded
            current_state:  dict or None
                The dict representation of the current object's configuration,
                or None if not present
        """

    @abc.abstractmethod
    def filter_objects_current_state(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
        label_selector: Optional[str] = None,
        field_selector: Optional[str] = None,
    ) -> Tuple[bool, List[dict]]:
        """Fetch a list of objects that match either/both the label or field
        selector

        Args:
            kind:  str
                The kind of the object to fetch
            namespace:  str
                The namespace to search for the object
            api_version:  str
                The api_version of the resource kind to fetch
            label_selector:  str
                The label_selector to filter the resources
            field_selector:  str
                The field_selector to filter the resources

        Returns:
            success:  bool
                Whether or not the state fetch operation succeeded
            current_state:  List[dict]
                A list of dict representations for the objects configuration,
                or an empty list if no objects match
        """

    @abc.abstractmethod
    def create_object(self, definition: dict) -> Tuple[bool, Optional[dict]]:
        """Create a new object. If metadata.name is unset, metadata.generateName
        is used to derive a unique name.

        Args:
            definition:  dict
                The full manifest of the object to create

        Returns:
            success:  bool
                Whether or not the create succeeded
            created:  dict or None
                The object as stored by the server
        """

    @abc.abstractmethod
    def patch_object(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        name: str,
        namespace: Optional[str],
        patch: List[dict],
        api_version: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> Tuple[bool, Optional[dict]]:
        """Apply a JSON patch to an object

        Args:
            kind:  str
                The kind of the object to patch
            name:  str
                The name of the object to patch
            namespace:  Optional[str]
                The namespace of the object
            patch:  List[dict]
                The JSON patch operations to apply
            api_version:  Optional[str]
                The api_version of the object
            resource_version:  Optional[str]
                If set, the patch only applies when the stored object is still
                at this resourceVersion

        Returns:
            success:  bool
                Whether or not the patch succeeded
            patched:  dict or None
                The object as stored by the server after the patch
        """

    @abc.abstractmethod
    def patch_status(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        name: str,
        namespace: Optional[str],
        patch: List[dict],
        api_version: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> Tuple[bool, Optional[dict]]:
        """Apply a JSON patch to the status subresource of an object. The
        patch operations must address paths under /status.

        Args:
            kind:  str
                The kind of the object to patch
            name:  str
                The name of the object to patch
            namespace:  Optional[str]
                The namespace of the object
            patch:  List[dict]
                The JSON patch operations to apply
            api_version:  Optional[str]
                The api_version of the object
            resource_version:  Optional[str]
                If set, the patch only applies when the stored object is still
                at this resourceVersion

        Returns:
            success:  bool
                Whether or not the patch succeeded
            patched:  dict or None
                The object as stored by the server after the patch
        """

    @abc.abstractmethod
    def delete_object(
        self,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
    ) -> Tuple[bool, bool]:
        """Delete an object. An object that is already gone counts as a
        success without change.

        Args:
            kind:  str
                The kind of the object to delete
            name:  str
                The name of the object to delete
            namespace:  Optional[str]
                The namespace of the object
            api_version:  Optional[str]
                The api_version of the object

        Returns:
            success:  bool
                Whether or not the delete succeeded
            changed:  bool
                Whether or not the delete resulted in changes
        """
