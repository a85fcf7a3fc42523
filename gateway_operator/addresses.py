"""
Derive the addresses a DataPlane publishes in its status from a Service
"""

# Standard
from typing import List

# First Party
import alog

# Local
from .constants import AWS_LB_SCHEME_ANNOTATION, AWS_LB_SCHEME_INTERNAL
from .utils import nested_get

log = alog.use_channel("ADDRS")

## Address types ###############################################################

ADDRESS_TYPE_IP = "IPAddress"
ADDRESS_TYPE_HOSTNAME = "Hostname"

SOURCE_PUBLIC_LB = "PublicLoadBalancer"
SOURCE_PRIVATE_LB = "PrivateLoadBalancer"
SOURCE_PRIVATE_IP = "PrivateIP"

# clusterIP value of a headless Service
CLUSTER_IP_NONE = "None"


def _address(address_type: str, value: str, source_type: str) -> dict:
    return {"type": address_type, "value": value, "sourceType": source_type}


def _load_balancer_source_type(service: dict) -> str:
    annotations = nested_get(service, "metadata.annotations", {})
    if annotations.get(AWS_LB_SCHEME_ANNOTATION) == AWS_LB_SCHEME_INTERNAL:
        return SOURCE_PRIVATE_LB
    return SOURCE_PUBLIC_LB


def addresses_from_service(service: dict) -> List[dict]:
    """Build the ordered list of addresses for a Service.

    Load balancer ingress entries come first, in the order the cloud provider
    reports them, with the IP of each entry ahead of its hostname. Cluster IPs
    follow. A headless Service contributes no cluster IP.

    Args:
        service:  dict
            The Service as read from the cluster

    Returns:
        addresses:  List[dict]
            Entries of the form {type, value, sourceType}
    """
    addresses = []

    lb_source = _load_balancer_source_type(service)
    for ingress in nested_get(service, "status.loadBalancer.ingress", []):
        if ingress.get("ip"):
            addresses.append(_address(ADDRESS_TYPE_IP, ingress["ip"], lb_source))
        if ingress.get("hostname"):
            addresses.append(
                _address(ADDRESS_TYPE_HOSTNAME, ingress["hostname"], lb_source)
            )

    cluster_ips = nested_get(service, "spec.clusterIPs", [])
    if not cluster_ips:
        cluster_ip = nested_get(service, "spec.clusterIP")
        cluster_ips = [cluster_ip] if cluster_ip else []
    for cluster_ip in cluster_ips:
        if cluster_ip and cluster_ip != CLUSTER_IP_NONE:
            addresses.append(_address(ADDRESS_TYPE_IP, cluster_ip, SOURCE_PRIVATE_IP))

    log.debug3(
        "Addresses for Service %s: %s",
        nested_get(service, "metadata.name"),
        addresses,
    )
    return addresses


def service_has_load_balancer_address(service: dict) -> bool:
    """Whether a LoadBalancer Service has been given an ingress IP or hostname"""
    return any(
        ingress.get("ip") or ingress.get("hostname")
        for ingress in nested_get(service, "status.loadBalancer.ingress", [])
    )
