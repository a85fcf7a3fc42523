"""
Tests for the ManagedObject views
"""

# Third Party
import pytest

# Local
from gateway_operator.constants import (
    MANAGED_BY_LABEL,
    MANAGED_BY_LABEL_LEGACY,
    WAIT_FOR_OWNER_FINALIZER,
    PromotionStrategy,
    RolloutResourcePlan,
)
from gateway_operator.exceptions import ConfigError
from gateway_operator.managed_object import ControlPlane, ManagedObject
from gateway_operator.reduce import remove_wait_for_owner_finalizer
from gateway_operator.test_helpers.helpers import (
    TEST_DATAPLANE_UID,
    make_dataplane,
    setup_dataplane,
)


def test_managed_object_fields():
    """Make sure that the metadata fields are exposed"""
    obj = ManagedObject(
        {
            "kind": "Foo",
            "apiVersion": "foo.bar/v1",
            "metadata": {
                "name": "foo",
                "namespace": "ns",
                "uid": "abc",
                "generation": 3,
                "creationTimestamp": "2023-01-01T00:00:00Z",
            },
        }
    )
    assert obj.generation == 3
    assert obj.labels == {}
    assert obj.finalizers == []
    assert obj.deletion_timestamp is None
    assert str(obj) == "foo.bar/v1/Foo/foo"
    same_uid = {"kind": "Foo", "metadata": {"name": "x", "uid": "abc"}}
    assert obj == ManagedObject(same_uid)


def test_managed_object_requires_name():
    """Make sure that a kind and a name are required"""
    with pytest.raises(AssertionError):
        ManagedObject({"kind": "Foo", "metadata": {}})


def test_dataplane_owner_semantics():
    """Make sure that children of a DataPlane are labelled, referenced and
    finalized as DataPlane children
    """
    dataplane = make_dataplane()
    assert dataplane.managed_labels() == {MANAGED_BY_LABEL: "dataplane"}
    assert dataplane.legacy_managed_selector() == (
        f"{MANAGED_BY_LABEL_LEGACY}=dataplane,!{MANAGED_BY_LABEL}"
    )
    assert dataplane.owner_reference()["uid"] == TEST_DATAPLANE_UID
    assert dataplane.owned_finalizers() == [WAIT_FOR_OWNER_FINALIZER]
    assert dataplane.pre_delete_hooks() == [remove_wait_for_owner_finalizer]
    assert dataplane.owns(
        {"metadata": {"ownerReferences": [dataplane.owner_reference()]}}
    )


def test_controlplane_owner_semantics():
    """Make sure that ControlPlane children carry their own managed-by value"""
    controlplane = ControlPlane(
        {
            "kind": "ControlPlane",
            "metadata": {"name": "cp", "namespace": "ns", "uid": "cp-uid"},
            "spec": {"dataplane": "dp"},
        }
    )
    assert controlplane.managed_labels() == {MANAGED_BY_LABEL: "controlplane"}
    assert controlplane.dataplane_name == "dp"
    assert controlplane.owned_finalizers() == []
    assert controlplane.pre_delete_hooks() == []


def test_dataplane_rollout_options():
    """Make sure that the rollout options are read with their defaults"""
    assert make_dataplane().blue_green is None

    dataplane = make_dataplane(blue_green={})
    assert dataplane.blue_green == {}
    assert dataplane.promotion_strategy == (
        PromotionStrategy.BREAK_BEFORE_PROMOTION.value
    )
    assert (
        dataplane.rollout_resource_plan
        == RolloutResourcePlan.SCALE_DOWN_ON_PROMOTION_SCALE_UP_ON_ROLLOUT
    )

    dataplane = make_dataplane(
        blue_green={
            "resources": {"plan": {"deployment": "DeleteOnPromotionRecreateOnRollout"}}
        }
    )
    assert (
        dataplane.rollout_resource_plan
        == RolloutResourcePlan.DELETE_ON_PROMOTION_RECREATE_ON_ROLLOUT
    )


def test_dataplane_unknown_resource_plan():
    """Make sure that an unknown resource plan is a configuration error"""
    dataplane = make_dataplane(
        blue_green={"resources": {"plan": {"deployment": "KeepEverything"}}}
    )
    with pytest.raises(ConfigError):
        dataplane.rollout_resource_plan  # pylint: disable=pointless-statement


def test_dataplane_status_views():
    """Make sure that the status selectors are read from the status"""
    dataplane = make_dataplane(
        status={"selector": "a", "rollout": {"deployment": {"selector": "b"}}}
    )
    assert dataplane.status_selector == "a"
    assert dataplane.rollout_selector == "b"
    assert dataplane.rollout_status == {"deployment": {"selector": "b"}}
    assert make_dataplane().rollout_selector is None


def test_dataplane_scaling_options():
    """Make sure that the horizontal scaling options are read"""
    dataplane = make_dataplane(
        deployment={"scaling": {"horizontalScaling": {"minReplicas": 3}}}
    )
    assert dataplane.has_horizontal_scaling
    assert dataplane.min_replicas == 3
    assert dataplane.replicas is None
    assert not make_dataplane().has_horizontal_scaling


def test_dataplane_pod_template_copy():
    """Make sure that the pod template overlay is a copy"""
    dataplane = make_dataplane(
        deployment={"podTemplateSpec": {"metadata": {"labels": {"a": "b"}}}}
    )
    dataplane.pod_template_spec["metadata"]["labels"]["a"] = "changed"
    assert dataplane.pod_template_spec["metadata"]["labels"]["a"] == "b"
    assert setup_dataplane()["spec"]["deployment"] == {}
