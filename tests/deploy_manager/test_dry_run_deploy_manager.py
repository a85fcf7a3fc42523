"""Tests for the DryRunDeployManager

NOTE: The majority of the functionality is thoroughly exercised by all of the
    other unit tests, so the tests here only test elements that are particularly
    delicate and/or not covered elsewhere.
"""
# Third Party
import pytest

# Local
from gateway_operator.deploy_manager import DryRunDeployManager
from gateway_operator.exceptions import ConflictError, NotFoundError
from gateway_operator.test_helpers.helpers import TEST_NAMESPACE

## Helpers #####################################################################

SOME_OTHER_NAMESPACE = "somewhere-else"


def make_obj(
    api_version, kind, name="foobar", namespace=SOME_OTHER_NAMESPACE, spec=None
):
    return {
        "apiVersion": api_version,
        "kind": kind,
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": {
                "app": "foobar",
                "run": "frontend",
            },
        },
        "spec": spec or {"a": 1},
    }


def get_obj(dm, kind="Foo", name="foobar", namespace=SOME_OTHER_NAMESPACE):
    success, content = dm.get_object_current_state(kind, name, namespace)
    assert success
    return content


## Create ######################################################################


def test_pre_deploy_resources():
    """Make sure that resources passed to the constructor are present"""
    dm = DryRunDeployManager(resources=[make_obj("foo/v1", "Foo")])
    obj = get_obj(dm)
    assert obj is not None
    assert obj["spec"] == {"a": 1}


def test_create_server_metadata():
    """Make sure that create fills in the metadata the server owns"""
    dm = DryRunDeployManager()
    success, created = dm.create_object(make_obj("foo/v1", "Foo"))
    assert success
    metadata = created["metadata"]
    assert metadata["uid"]
    assert metadata["creationTimestamp"].endswith("Z")
    assert metadata["generation"] == 1
    assert metadata["resourceVersion"]
    assert get_obj(dm) == created


def test_create_default_api_version():
    """Make sure that a registered kind without an apiVersion gets the one it
    is served under
    """
    dm = DryRunDeployManager()
    obj = make_obj(None, "Deployment")
    del obj["apiVersion"]
    _, created = dm.create_object(obj)
    assert created["apiVersion"] == "apps/v1"


def test_create_generate_name():
    """Make sure that generateName produces distinct names with the prefix"""
    dm = DryRunDeployManager()
    names = set()
    for _ in range(3):
        obj = make_obj("foo/v1", "Foo")
        del obj["metadata"]["name"]
        obj["metadata"]["generateName"] = "foo-"
        _, created = dm.create_object(obj)
        assert created["metadata"]["name"].startswith("foo-")
        names.add(created["metadata"]["name"])
    assert len(names) == 3


def test_create_existing_conflicts():
    """Make sure that creating an object that already exists conflicts"""
    dm = DryRunDeployManager(resources=[make_obj("foo/v1", "Foo")])
    with pytest.raises(ConflictError):
        dm.create_object(make_obj("foo/v1", "Foo"))


def test_create_service_cluster_ip():
    """Make sure that Services get a cluster IP unless they are ExternalName"""
    dm = DryRunDeployManager()
    _, svc = dm.create_object(make_obj("v1", "Service", name="svc", spec={}))
    _, other = dm.create_object(make_obj("v1", "Service", name="svc2", spec={}))
    _, external = dm.create_object(
        make_obj("v1", "Service", name="ext", spec={"type": "ExternalName"})
    )
    assert svc["spec"]["clusterIP"]
    assert svc["spec"]["clusterIP"] != other["spec"]["clusterIP"]
    assert "clusterIP" not in external["spec"]


## Patch #######################################################################


def test_patch_bumps_resource_version_and_generation():
    """Make sure that a spec patch moves both the resourceVersion and the
    generation while a metadata patch only moves the resourceVersion
    """
    dm = DryRunDeployManager(resources=[make_obj("foo/v1", "Foo")])
    before = get_obj(dm)

    success, patched = dm.patch_object(
        "Foo",
        "foobar",
        SOME_OTHER_NAMESPACE,
        [{"op": "replace", "path": "/spec/a", "value": 2}],
        resource_version=before["metadata"]["resourceVersion"],
    )
    assert success
    assert patched["spec"]["a"] == 2
    assert patched["metadata"]["generation"] == 2
    assert (
        patched["metadata"]["resourceVersion"] != before["metadata"]["resourceVersion"]
    )

    _, relabelled = dm.patch_object(
        "Foo",
        "foobar",
        SOME_OTHER_NAMESPACE,
        [{"op": "add", "path": "/metadata/labels/extra", "value": "yes"}],
    )
    assert relabelled["metadata"]["generation"] == 2
    assert relabelled["metadata"]["labels"]["extra"] == "yes"


def test_patch_stale_resource_version_conflicts():
    """Make sure that a patch guarded by an old resourceVersion is rejected and
    nothing is changed
    """
    dm = DryRunDeployManager(resources=[make_obj("foo/v1", "Foo")])
    before = get_obj(dm)
    dm.patch_object(
        "Foo",
        "foobar",
        SOME_OTHER_NAMESPACE,
        [{"op": "replace", "path": "/spec/a", "value": 2}],
    )
    with pytest.raises(ConflictError):
        dm.patch_object(
            "Foo",
            "foobar",
            SOME_OTHER_NAMESPACE,
            [{"op": "replace", "path": "/spec/a", "value": 3}],
            resource_version=before["metadata"]["resourceVersion"],
        )
    assert get_obj(dm)["spec"]["a"] == 2


def test_patch_missing_not_found():
    """Make sure that patching a missing object raises NotFoundError"""
    dm = DryRunDeployManager()
    with pytest.raises(NotFoundError):
        dm.patch_object("Foo", "foobar", SOME_OTHER_NAMESPACE, [])
    with pytest.raises(NotFoundError):
        dm.patch_status("Foo", "foobar", SOME_OTHER_NAMESPACE, [])


def test_patch_invalid_reports_failure():
    """Make sure that a patch which can not be applied reports failure"""
    dm = DryRunDeployManager(resources=[make_obj("foo/v1", "Foo")])
    success, content = dm.patch_object(
        "Foo",
        "foobar",
        SOME_OTHER_NAMESPACE,
        [{"op": "remove", "path": "/spec/not_there"}],
    )
    assert not success
    assert content is None


def test_patch_object_keeps_status_and_identity():
    """Make sure that the main endpoint does not change status or the metadata
    the server owns
    """
    dm = DryRunDeployManager(resources=[make_obj("foo/v1", "Foo")])
    dm.set_status("Foo", "foobar", SOME_OTHER_NAMESPACE, {"ok": True})
    before = get_obj(dm)
    _, patched = dm.patch_object(
        "Foo",
        "foobar",
        SOME_OTHER_NAMESPACE,
        [
            {"op": "replace", "path": "/status", "value": {"ok": False}},
            {"op": "replace", "path": "/metadata/uid", "value": "stolen"},
        ],
    )
    assert patched["status"] == {"ok": True}
    assert patched["metadata"]["uid"] == before["metadata"]["uid"]


def test_patch_status_only_changes_status():
    """Make sure that the status endpoint ignores everything outside status"""
    dm = DryRunDeployManager(resources=[make_obj("foo/v1", "Foo")])
    _, patched = dm.patch_status(
        "Foo",
        "foobar",
        SOME_OTHER_NAMESPACE,
        [
            {"op": "add", "path": "/status", "value": {"ready": True}},
            {"op": "replace", "path": "/spec/a", "value": 5},
        ],
    )
    assert patched["status"] == {"ready": True}
    assert patched["spec"] == {"a": 1}
    assert patched["metadata"]["generation"] == 1


## Delete ######################################################################


def test_delete_present_and_missing():
    """Make sure that deleting reports a change only when something is removed"""
    dm = DryRunDeployManager(resources=[make_obj("foo/v1", "Foo")])
    assert dm.delete_object("Foo", "foobar", SOME_OTHER_NAMESPACE) == (True, True)
    assert get_obj(dm) is None
    assert dm.delete_object("Foo", "foobar", SOME_OTHER_NAMESPACE) == (True, False)


def test_delete_waits_for_finalizers():
    """Make sure that an object with finalizers is only marked for deletion and
    is removed once its finalizers are cleared
    """
    obj = make_obj("foo/v1", "Foo")
    obj["metadata"]["finalizers"] = ["example.com/hold"]
    dm = DryRunDeployManager(resources=[obj])

    assert dm.delete_object("Foo", "foobar", SOME_OTHER_NAMESPACE) == (True, True)
    marked = get_obj(dm)
    assert marked is not None
    assert marked["metadata"]["deletionTimestamp"]

    dm.patch_object(
        "Foo",
        "foobar",
        SOME_OTHER_NAMESPACE,
        [{"op": "replace", "path": "/metadata/finalizers", "value": []}],
    )
    assert get_obj(dm) is None


## set_status ##################################################################


def test_set_status():
    """Make sure that set_status reports whether the status changed"""
    dm = DryRunDeployManager(resources=[make_obj("foo/v1", "Foo")])
    assert dm.set_status("Foo", "foobar", SOME_OTHER_NAMESPACE, {"a": 1}) == (
        True,
        True,
    )
    assert dm.set_status("Foo", "foobar", SOME_OTHER_NAMESPACE, {"a": 1}) == (
        True,
        False,
    )
    assert dm.set_status("Foo", "missing", SOME_OTHER_NAMESPACE, {"a": 1}) == (
        False,
        False,
    )


## Filtering ###################################################################


@pytest.mark.parametrize(
    ["resources", "label_selector", "field_selector", "obj_count"],
    [
        # Label Selectors
        [[make_obj("foo/v1", "Foo", name="first")], "app=foobar", None, 1],
        [[make_obj("foo/v1", "Foo", name="first")], "app==foobar", None, 1],
        [[make_obj("foo/v1", "Foo", name="first")], "app!=foobar", None, 0],
        [[make_obj("foo/v1", "Foo", name="first")], "app=foobar,run=frontend", None, 1],
        [[make_obj("foo/v1", "Foo", name="first")], "app=foobar,run=backend", None, 0],
        [[make_obj("foo/v1", "Foo", name="first")], "app in (foobar,x)", None, 1],
        [[make_obj("foo/v1", "Foo", name="first")], "app notin (foobar,x)", None, 0],
        [[make_obj("foo/v1", "Foo", name="first")], "app", None, 1],
        [[make_obj("foo/v1", "Foo", name="first")], "!app", None, 0],
        [[make_obj("foo/v1", "Foo", name="first")], "!missing", None, 1],
        # Field Selectors
        [[make_obj("foo/v1", "Foo", name="first")], None, "spec.a=1", 1],
        [[make_obj("foo/v1", "Foo", name="first")], None, "spec.a=2", 0],
        [
            [
                make_obj("foo/v1", "Foo", name="first"),
                make_obj("foo/v1", "Foo", name="second"),
            ],
            None,
            "metadata.name==first",
            1,
        ],
        # Label And Field Selector Combined
        [[make_obj("foo/v1", "Foo", name="first")], "app=foobar", "spec.a=1", 1],
        [[make_obj("foo/v1", "Foo", name="first")], "app in (wrong)", "spec.a=1", 0],
        # Blank Field and Label Selectors match all
        [
            [
                make_obj("foo/v1", "Foo", name="first"),
                make_obj("foo/v1", "Foo", name="second"),
            ],
            None,
            None,
            2,
        ],
    ],
)
def test_filter_objects_current_state(
    resources, label_selector, field_selector, obj_count
):
    """Make sure that all types of field selectors and label selectors work as
    expected
    """
    dm = DryRunDeployManager(resources=resources)
    success, content = dm.filter_objects_current_state(
        "Foo",
        api_version="foo/v1",
        namespace=SOME_OTHER_NAMESPACE,
        label_selector=label_selector,
        field_selector=field_selector,
    )
    assert success
    assert len(content) == obj_count


def test_filter_object_state_incorrect_api_version():
    """Make sure that filtering with a different apiVersion finds nothing"""
    dm = DryRunDeployManager(resources=[make_obj("right", "Foo", name="first")])
    success, content = dm.filter_objects_current_state(
        "Foo", namespace=SOME_OTHER_NAMESPACE, api_version="wrong"
    )
    assert success
    assert content == []


def test_filter_other_namespace():
    """Make sure that filtering is scoped to the namespace"""
    dm = DryRunDeployManager(resources=[make_obj("foo/v1", "Foo")])
    success, content = dm.filter_objects_current_state("Foo", namespace=TEST_NAMESPACE)
    assert success
    assert content == []
