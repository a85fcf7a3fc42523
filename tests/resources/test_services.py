"""
Tests for the DataPlane Service generators
"""

# Standard
import json

# Local
from gateway_operator.constants import (
    ADMIN_API_PORT,
    APP_LABEL,
    LAST_APPLIED_ANNOTATIONS_ANNOTATION,
    PROXY_PORT,
    SELECTOR_LABEL,
    SERVICE_STATE_LABEL,
    SERVICE_TYPE_LABEL,
    WAIT_FOR_OWNER_FINALIZER,
)
from gateway_operator.resources.services import (
    generate_admin_service,
    generate_ingress_service,
    ingress_service_name,
    ingress_service_ports,
)
from gateway_operator.test_helpers.helpers import (
    TEST_DATAPLANE_NAME,
    TEST_DATAPLANE_UID,
    make_dataplane,
)

## Helpers #####################################################################


def ingress_network(**options):
    return {"services": {"ingress": options}}


## Admin #######################################################################


def test_generate_admin_service():
    """Make sure that the admin Service is headless and publishes not ready
    addresses on the admin port
    """
    service = generate_admin_service(
        make_dataplane(), extra_labels={SERVICE_STATE_LABEL: "live"}, selector="abc"
    )
    metadata = service["metadata"]
    assert metadata["generateName"] == f"dataplane-admin-{TEST_DATAPLANE_NAME}-"
    assert metadata["labels"][SERVICE_TYPE_LABEL] == "admin"
    assert metadata["labels"][SERVICE_STATE_LABEL] == "live"
    assert metadata["ownerReferences"][0]["uid"] == TEST_DATAPLANE_UID
    assert metadata["finalizers"] == [WAIT_FOR_OWNER_FINALIZER]

    spec = service["spec"]
    assert spec["clusterIP"] == "None"
    assert spec["publishNotReadyAddresses"]
    assert spec["selector"] == {APP_LABEL: TEST_DATAPLANE_NAME, SELECTOR_LABEL: "abc"}
    assert [port["port"] for port in spec["ports"]] == [ADMIN_API_PORT]


def test_generate_admin_service_no_selector():
    """Make sure that without a selector uuid only the app label selects"""
    service = generate_admin_service(make_dataplane())
    assert service["spec"]["selector"] == {APP_LABEL: TEST_DATAPLANE_NAME}


## Ingress #####################################################################


def test_generate_ingress_service_defaults():
    """Make sure that the default ingress Service is a LoadBalancer with the
    default proxy ports
    """
    service = generate_ingress_service(make_dataplane())
    assert service["metadata"]["labels"][SERVICE_TYPE_LABEL] == "ingress"
    assert service["metadata"]["generateName"] == (
        f"dataplane-ingress-{TEST_DATAPLANE_NAME}-"
    )
    assert "annotations" not in service["metadata"]
    assert service["spec"]["type"] == "LoadBalancer"
    assert "externalTrafficPolicy" not in service["spec"]
    assert [(port["name"], port["port"]) for port in service["spec"]["ports"]] == [
        ("proxy", 80),
        ("proxy-ssl", 443),
    ]


def test_generate_ingress_service_options():
    """Make sure that the user's Service options are applied"""
    dataplane = make_dataplane(
        network=ingress_network(
            name="my-ingress",
            type="NodePort",
            externalTrafficPolicy="Local",
            annotations={"b": "2", "a": "1"},
        )
    )
    service = generate_ingress_service(dataplane)
    metadata = service["metadata"]
    assert metadata["name"] == "my-ingress"
    assert "generateName" not in metadata
    assert metadata["annotations"]["a"] == "1"
    assert json.loads(metadata["annotations"][LAST_APPLIED_ANNOTATIONS_ANNOTATION]) == {
        "a": "1",
        "b": "2",
    }
    assert service["spec"]["type"] == "NodePort"
    assert service["spec"]["externalTrafficPolicy"] == "Local"


def test_ingress_service_name():
    """Make sure that an empty name means a generated name"""
    assert ingress_service_name(make_dataplane()) is None
    unnamed = make_dataplane(network=ingress_network(name=""))
    assert ingress_service_name(unnamed) is None
    assert (
        ingress_service_name(make_dataplane(network=ingress_network(name="x"))) == "x"
    )


def test_ingress_service_ports_user():
    """Make sure that user ports replace the defaults, default their target and
    drop repeated port numbers
    """
    dataplane = make_dataplane(
        network=ingress_network(
            ports=[
                {"name": "http", "port": 8080},
                {"name": "https", "port": 8443, "targetPort": 8443, "nodePort": 30443},
                {"name": "again", "port": 8080, "targetPort": 1},
            ]
        )
    )
    assert ingress_service_ports(dataplane) == [
        {"name": "http", "protocol": "TCP", "port": 8080, "targetPort": PROXY_PORT},
        {
            "name": "https",
            "protocol": "TCP",
            "port": 8443,
            "targetPort": 8443,
            "nodePort": 30443,
        },
    ]
