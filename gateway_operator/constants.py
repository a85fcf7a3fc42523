"""
Shared module to hold constant values for the library
"""

# Standard
from enum import Enum
from typing import Optional

# Prefix shared by every operator-owned label and annotation
LABEL_PREFIX = "gateway-operator.konghq.com"

## Labels ######################################################################

# Label marking an object as managed by the operator and which component
# manages it
MANAGED_BY_LABEL = f"{LABEL_PREFIX}/managed-by"
MANAGED_BY_DATAPLANE = "dataplane"
MANAGED_BY_CONTROLPLANE = "controlplane"

# Label used before the managed-by label moved to the operator prefix. Objects
# carrying only this label are always reduced first.
MANAGED_BY_LABEL_LEGACY = "konghq.com/gateway-operator"

# The kind of service (admin or ingress) of a DataPlane Service
SERVICE_TYPE_LABEL = f"{LABEL_PREFIX}/dataplane-service-type"

# The rollout state (live or preview) of DataPlane Services and Deployments
SERVICE_STATE_LABEL = f"{LABEL_PREFIX}/dataplane-service-state"
DEPLOYMENT_STATE_LABEL = f"{LABEL_PREFIX}/dataplane-deployment-state"

# Label carrying the DataPlane selector uuid on pods, Deployments and Service
# selectors
SELECTOR_LABEL = f"{LABEL_PREFIX}/selector"

# Label attaching a TLS Secret to the Service it secures
SERVICE_SECRET_LABEL = f"{LABEL_PREFIX}/service-secret"

# Pod label holding the owning DataPlane name
APP_LABEL = "app"

# Label set by the endpoint slice controller
ENDPOINT_SLICE_SERVICE_NAME_LABEL = "kubernetes.io/service-name"

## Annotations #################################################################

# Annotation gating promotion for the BreakBeforePromotion strategy
PROMOTE_WHEN_READY_ANNOTATION = f"{LABEL_PREFIX}/promote-when-ready"
PROMOTE_WHEN_READY_TRUE = "true"

# Annotation recording the user-specified ingress Service annotations that
# were applied on the previous reconcile
LAST_APPLIED_ANNOTATIONS_ANNOTATION = f"{LABEL_PREFIX}/last-applied-annotations"

# Annotation written by `kubectl rollout restart`
RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"

# Annotation on AWS load balancers selecting an internal scheme
AWS_LB_SCHEME_ANNOTATION = "service.beta.kubernetes.io/aws-load-balancer-scheme"
AWS_LB_SCHEME_INTERNAL = "internal"

## Finalizers ##################################################################

WAIT_FOR_OWNER_FINALIZER = f"{LABEL_PREFIX}/wait-for-owner"

## Workload defaults ###########################################################

PROXY_CONTAINER_NAME = "proxy"
CONTROLLER_CONTAINER_NAME = "controller"

ADMIN_API_PORT = 8444
ADMIN_API_PORT_NAME = "admin"
PROXY_PORT = 8000
PROXY_SSL_PORT = 8443
STATUS_PORT = 8100

# Default ingress ports: (name, service port, target port)
DEFAULT_INGRESS_PORTS = [
    ("proxy", 80, PROXY_PORT),
    ("proxy-ssl", 443, PROXY_SSL_PORT),
]

DEFAULT_INGRESS_SERVICE_TYPE = "LoadBalancer"
DEFAULT_EXTERNAL_TRAFFIC_POLICY = "Cluster"

DEFAULT_CPU_REQUEST = "100m"
DEFAULT_CPU_LIMIT = "1000m"
DEFAULT_MEMORY_REQUEST = "20Mi"
DEFAULT_MEMORY_LIMIT = "1000Mi"

CLUSTER_CERT_VOLUME_NAME = "cluster-certificate"
CLUSTER_CERT_MOUNT_PATH = "/var/cluster-certificate"

# Prefixes used with generateName for owned objects
ADMIN_SERVICE_NAME_PREFIX = "dataplane-admin"
INGRESS_SERVICE_NAME_PREFIX = "dataplane-ingress"
DEPLOYMENT_NAME_PREFIX = "dataplane"
CONTROLPLANE_DEPLOYMENT_NAME_PREFIX = "controlplane"

## Conditions ##################################################################

READY_CONDITION = "Ready"
ROLLED_OUT_CONDITION = "RolledOut"
PROVISIONED_CONDITION = "Provisioned"

# Condition list cap (Kubernetes API size convention)
MAX_CONDITIONS = 8

## Typed label values ##########################################################


class ServiceState(Enum):
    """The rollout generation a DataPlane Service or Deployment belongs to"""

    LIVE = "live"
    PREVIEW = "preview"

    @classmethod
    def decode(cls, labels: Optional[dict], key: str) -> Optional["ServiceState"]:
        """Decode the state label from an object's labels. Unknown or missing
        values decode to None.
        """
        value = (labels or {}).get(key)
        try:
            return cls(value)
        except ValueError:
            return None


class ServiceType(Enum):
    """The role of a DataPlane Service"""

    ADMIN = "admin"
    INGRESS = "ingress"


class PromotionStrategy(Enum):
    """How preview resources are promoted to live"""

    AUTOMATIC = "AutomaticPromotion"
    BREAK_BEFORE_PROMOTION = "BreakBeforePromotion"


class RolloutResourcePlan(Enum):
    """What happens to the preview Deployment between rollouts"""

    SCALE_DOWN_ON_PROMOTION_SCALE_UP_ON_ROLLOUT = "ScaleDownOnPromotionScaleUpOnRollout"
    DELETE_ON_PROMOTION_RECREATE_ON_ROLLOUT = "DeleteOnPromotionRecreateOnRollout"


DEFAULT_ROLLOUT_RESOURCE_PLAN = (
    RolloutResourcePlan.SCALE_DOWN_ON_PROMOTION_SCALE_UP_ON_ROLLOUT
)
