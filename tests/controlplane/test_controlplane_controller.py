"""
Tests for the ControlPlane reconciler
"""

# Third Party
from cryptography import x509

# Local
from gateway_operator import conditions
from gateway_operator.constants import (
    CLUSTER_CERT_VOLUME_NAME,
    MANAGED_BY_LABEL,
    PROVISIONED_CONDITION,
)
from gateway_operator.controlplane import ControlPlaneReconciler
from gateway_operator.dataplane import DataPlaneReconciler
from gateway_operator.resources.secrets import load_certificate
from gateway_operator.test_helpers.helpers import (
    TEST_CONTROLPLANE_NAME,
    TEST_DATAPLANE_NAME,
    TEST_NAMESPACE,
    MockDeployManager,
    get_dataplane_obj,
    reconcile_until_done,
    setup_controlplane,
    setup_dataplane,
)

## Helpers #####################################################################

CONTROLPLANE_LABELS = {MANAGED_BY_LABEL: "controlplane"}


def converge_controlplane(dm):
    reconcile_until_done(ControlPlaneReconciler(dm), dm, name=TEST_CONTROLPLANE_NAME)


def provisioned(dm):
    condition, found = conditions.get_condition(
        dm.get_obj("ControlPlane", TEST_CONTROLPLANE_NAME), PROVISIONED_CONDITION
    )
    assert found
    return condition


def controlplane_deployment(dm):
    deployments = dm.list_objs("Deployment", labels=CONTROLPLANE_LABELS)
    assert len(deployments) == 1
    return deployments[0]


def controller_env(deployment):
    container = deployment["spec"]["template"]["spec"]["containers"][0]
    return {entry["name"]: entry.get("value") for entry in container["env"]}


## Reconcile ###################################################################


def test_reconcile_without_dataplane():
    """Make sure that a ControlPlane without a DataPlane is scaled to zero and
    reports NoDataPlane
    """
    dm = MockDeployManager(resources=[setup_controlplane()])
    converge_controlplane(dm)

    deployment = controlplane_deployment(dm)
    assert deployment["spec"]["replicas"] == 0
    assert "CONTROLLER_PUBLISH_SERVICE" not in controller_env(deployment)

    condition = provisioned(dm)
    assert condition["status"] == "False"
    assert condition["reason"] == "NoDataPlane"
    assert condition["message"] == "DataPlane is not set"


def test_reconcile_with_dataplane():
    """Make sure that the controller publishes the DataPlane ingress Service
    and is provisioned once its pods are available
    """
    dm = MockDeployManager(
        resources=[
            setup_dataplane(),
            setup_controlplane(dataplane=TEST_DATAPLANE_NAME),
        ]
    )
    reconcile_until_done(DataPlaneReconciler(dm), dm)
    converge_controlplane(dm)

    deployment = controlplane_deployment(dm)
    assert deployment["spec"]["replicas"] == 1
    ingress_service = get_dataplane_obj(dm)["status"]["service"]
    env = controller_env(deployment)
    assert env["CONTROLLER_PUBLISH_SERVICE"] == f"{TEST_NAMESPACE}/{ingress_service}"

    condition = provisioned(dm)
    assert condition["status"] == "True"
    assert condition["reason"] == "Provisioned"


def test_reconcile_admin_client_certificate():
    """Make sure that the controller mounts its own client certificate for
    name.namespace, next to the DataPlane's
    """
    dm = MockDeployManager(resources=[setup_controlplane()])
    converge_controlplane(dm)

    secrets = dm.list_objs("Secret", labels=CONTROLPLANE_LABELS)
    assert len(secrets) == 1
    cert = load_certificate(secrets[0])
    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    assert san.value.get_values_for_type(x509.DNSName) == [
        f"{TEST_CONTROLPLANE_NAME}.{TEST_NAMESPACE}"
    ]

    pod_spec = controlplane_deployment(dm)["spec"]["template"]["spec"]
    volumes = {volume["name"]: volume for volume in pod_spec["volumes"]}
    assert volumes[CLUSTER_CERT_VOLUME_NAME]["secret"]["secretName"] == (
        secrets[0]["metadata"]["name"]
    )
    assert "CONTROLLER_KONG_ADMIN_TLS_CLIENT_CERT_FILE" in controller_env(
        controlplane_deployment(dm)
    )


def test_reconcile_dataplane_not_found():
    """Make sure that a missing DataPlane leaves the controller scaled to zero"""
    dm = MockDeployManager(resources=[setup_controlplane(dataplane="missing")])
    converge_controlplane(dm)
    assert controlplane_deployment(dm)["spec"]["replicas"] == 0
    condition = provisioned(dm)
    assert condition["reason"] == "NoDataPlane"
    assert "missing" in condition["message"]


def test_reconcile_dataplane_appears():
    """Make sure that the controller is scaled up once its DataPlane publishes
    an ingress Service
    """
    dm = MockDeployManager(
        resources=[setup_controlplane(dataplane=TEST_DATAPLANE_NAME)]
    )
    converge_controlplane(dm)
    assert controlplane_deployment(dm)["spec"]["replicas"] == 0

    dm.create_object(setup_dataplane())
    reconcile_until_done(DataPlaneReconciler(dm), dm)
    converge_controlplane(dm)
    assert controlplane_deployment(dm)["spec"]["replicas"] == 1
    assert provisioned(dm)["status"] == "True"


def test_reconcile_image_override():
    """Make sure that the user's pod template sets the controller image"""
    dm = MockDeployManager(
        resources=[
            setup_controlplane(
                deployment={
                    "podTemplateSpec": {
                        "spec": {
                            "containers": [
                                {"name": "controller", "image": "kic:custom"}
                            ]
                        }
                    }
                }
            )
        ]
    )
    converge_controlplane(dm)
    container = controlplane_deployment(dm)["spec"]["template"]["spec"]["containers"][0]
    assert container["image"] == "kic:custom"


def test_reconcile_missing_controlplane():
    """Make sure that a deleted ControlPlane ends the reconcile quietly"""
    dm = MockDeployManager()
    result = ControlPlaneReconciler(dm).reconcile(TEST_NAMESPACE, "gone")
    assert not result.requeue
    assert not dm.create_object.called


def test_reconcile_one_write_per_pass():
    """Make sure that every pass writes at most once"""
    dm = MockDeployManager(resources=[setup_controlplane()])
    writes = []

    def count_writes(_):
        writes.append(
            dm.create_object.call_count
            + dm.patch_object.call_count
            + dm.patch_status.call_count
        )
        dm.create_object.reset_mock()
        dm.patch_object.reset_mock()
        dm.patch_status.reset_mock()

    reconcile_until_done(
        ControlPlaneReconciler(dm),
        dm,
        on_pass=count_writes,
        name=TEST_CONTROLPLANE_NAME,
    )
    assert all(count <= 1 for count in writes)
    assert writes[-1] == 0
