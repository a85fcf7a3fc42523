"""
Tests for the Service address derivation
"""

# Local
from gateway_operator.addresses import (
    addresses_from_service,
    service_has_load_balancer_address,
)
from gateway_operator.constants import AWS_LB_SCHEME_ANNOTATION


def make_service(ingress=None, cluster_ip=None, cluster_ips=None, annotations=None):
    service = {
        "kind": "Service",
        "metadata": {"name": "svc", "annotations": annotations or {}},
        "spec": {},
        "status": {"loadBalancer": {"ingress": ingress or []}},
    }
    if cluster_ip is not None:
        service["spec"]["clusterIP"] = cluster_ip
    if cluster_ips is not None:
        service["spec"]["clusterIPs"] = cluster_ips
    return service


def test_load_balancer_before_cluster_ips():
    """Make sure that ingress entries come first, IP ahead of hostname"""
    service = make_service(
        ingress=[{"ip": "1.2.3.4", "hostname": "lb.example.com"}, {"ip": "5.6.7.8"}],
        cluster_ip="10.0.0.1",
    )
    assert addresses_from_service(service) == [
        {"type": "IPAddress", "value": "1.2.3.4", "sourceType": "PublicLoadBalancer"},
        {
            "type": "Hostname",
            "value": "lb.example.com",
            "sourceType": "PublicLoadBalancer",
        },
        {"type": "IPAddress", "value": "5.6.7.8", "sourceType": "PublicLoadBalancer"},
        {"type": "IPAddress", "value": "10.0.0.1", "sourceType": "PrivateIP"},
    ]


def test_internal_load_balancer():
    """Make sure that an internal AWS load balancer is reported as private"""
    service = make_service(
        ingress=[{"hostname": "internal.example.com"}],
        annotations={AWS_LB_SCHEME_ANNOTATION: "internal"},
    )
    assert addresses_from_service(service) == [
        {
            "type": "Hostname",
            "value": "internal.example.com",
            "sourceType": "PrivateLoadBalancer",
        }
    ]


def test_cluster_ips_preferred_over_cluster_ip():
    """Make sure that dual stack cluster IPs are all listed"""
    service = make_service(cluster_ip="10.0.0.1", cluster_ips=["10.0.0.1", "fd00::1"])
    assert [addr["value"] for addr in addresses_from_service(service)] == [
        "10.0.0.1",
        "fd00::1",
    ]


def test_headless_service():
    """Make sure that a headless Service contributes no cluster IP"""
    assert addresses_from_service(make_service(cluster_ip="None")) == []
    assert addresses_from_service(make_service(cluster_ips=["None"])) == []


def test_service_has_load_balancer_address():
    """Make sure that only ingress entries with an IP or hostname count"""
    assert not service_has_load_balancer_address(make_service())
    assert not service_has_load_balancer_address(make_service(ingress=[{}]))
    assert service_has_load_balancer_address(make_service(ingress=[{"ip": "1.1.1.1"}]))
    assert service_has_load_balancer_address(
        make_service(ingress=[{"hostname": "lb"}])
    )
