"""
The KindRegistry maps the kinds the reconcilers read and write to the
apiVersion they are served under. A single registry is built when the process
starts and handed to each deploy manager and reconciler that needs it.
"""

# Standard
from typing import Dict, Iterable, NamedTuple, Optional

# First Party
import alog

log = alog.use_channel("REGST")

DATAPLANE_API_VERSION = "gateway-operator.konghq.com/v1beta1"


class KindInfo(NamedTuple):
    """Registration entry for a single kind"""

    kind: str
    api_version: str
    namespaced: bool = True


class KindRegistry:
    """Explicit registry of the kinds known to the operator"""

    def __init__(self, kinds: Optional[Iterable[KindInfo]] = None):
        self._kinds: Dict[str, KindInfo] = {}
        for kind_info in kinds or []:
            self.register(kind_info)

    def register(self, kind_info: KindInfo):
        """Add a kind to the registry. Registering the same kind twice with a
        different apiVersion is an error.
        """
        current = self._kinds.get(kind_info.kind)
        if current is not None and current != kind_info:
            raise ValueError(
                f"Kind {kind_info.kind} already registered as {current.api_version}"
            )
        log.debug3("Registering %s as %s", kind_info.kind, kind_info.api_version)
        self._kinds[kind_info.kind] = kind_info

    def api_version(self, kind: str) -> str:
        """Look up the apiVersion for a registered kind

        Args:
            kind:  str
                The kind to look up

        Returns:
            api_version:  str
                The apiVersion the kind is served under
        """
        return self.get(kind).api_version

    def get(self, kind: str) -> KindInfo:
        kind_info = self._kinds.get(kind)
        if kind_info is None:
            raise KeyError(f"Kind {kind} is not registered")
        return kind_info

    def __contains__(self, kind: str) -> bool:
        return kind in self._kinds

    def kinds(self):
        return list(self._kinds)


def default_registry() -> KindRegistry:
    """Build the registry holding the Managed Resource kinds and the kinds they
    own
    """
    return KindRegistry(
        [
            KindInfo("DataPlane", DATAPLANE_API_VERSION),
            KindInfo("ControlPlane", DATAPLANE_API_VERSION),
            KindInfo("Deployment", "apps/v1"),
            KindInfo("Service", "v1"),
            KindInfo("Secret", "v1"),
            KindInfo("EndpointSlice", "discovery.k8s.io/v1"),
        ]
    )
