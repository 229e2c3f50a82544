from __future__ import annotations

from types import SimpleNamespace

from kubernetes.client import ApiException
from urllib3.exceptions import MaxRetryError

from inheritor.src.synchronizer import LabelSynchronizer, inherit_labels
from inheritor.tests.fakes import FakeCoreApi, make_object


def _namespace(labels: dict[str, str] | None, name: str = "default") -> SimpleNamespace:
    return make_object(name, labels)


# ---------------------------------------------------------------------------
# inherit_labels
# ---------------------------------------------------------------------------


def test_inherit_labels_copies_only_included_keys() -> None:
    result = inherit_labels({"foo": "bar"}, {"app": "web", "team": "a"}, ["app"])

    assert result == {"foo": "bar", "app": "web"}


def test_inherit_labels_overwrites_existing_value() -> None:
    result = inherit_labels({"app": "old-label"}, {"app": "new-label"}, ["app"])

    assert result == {"app": "new-label"}


def test_inherit_labels_writes_empty_value_for_key_missing_on_namespace() -> None:
    result = inherit_labels({"foo": "bar"}, {"other": "x"}, ["app"])

    assert result == {"foo": "bar", "app": ""}


def test_inherit_labels_initializes_missing_label_map() -> None:
    assert inherit_labels(None, None, ["app"]) == {"app": ""}


def test_inherit_labels_does_not_mutate_input() -> None:
    original = {"foo": "bar"}
    inherit_labels(original, {"app": "web"}, ["app"])

    assert original == {"foo": "bar"}


# ---------------------------------------------------------------------------
# LabelSynchronizer.sync
# ---------------------------------------------------------------------------


def test_sync_updates_pods_and_config_maps() -> None:
    core = FakeCoreApi(
        pods={"default": [make_object("web", {"foo": "bar"})]},
        config_maps={"default": [make_object("settings", None)]},
    )

    result = LabelSynchronizer(core).sync(_namespace({"app": "new-label"}), ["app"])

    assert result.ok
    assert result.pods_updated == 1
    assert result.config_maps_updated == 1
    assert core.labels_of("pod", "default", "web") == {"foo": "bar", "app": "new-label"}
    assert core.labels_of("configmap", "default", "settings") == {"app": "new-label"}


def test_sync_pods_before_config_maps() -> None:
    core = FakeCoreApi(
        pods={"default": [make_object("web", {})]},
        config_maps={"default": [make_object("settings", {})]},
    )

    LabelSynchronizer(core).sync(_namespace({"app": "x"}), ["app"])

    assert [kind for kind, _, _ in core.updates] == ["pod", "configmap"]


def test_sync_empty_namespace_is_success() -> None:
    core = FakeCoreApi()

    result = LabelSynchronizer(core).sync(_namespace({"app": "x"}), ["app"])

    assert result.ok
    assert result.pods_updated == 0
    assert result.config_maps_updated == 0
    assert core.updates == []


def test_sync_stops_at_first_failed_pod_update() -> None:
    core = FakeCoreApi(
        pods={
            "default": [
                make_object("pod-1", {}),
                make_object("pod-2", {}),
                make_object("pod-3", {}),
            ]
        },
        config_maps={"default": [make_object("settings", {})]},
    )
    core.fail_updates[("pod", "default", "pod-2")] = ApiException(status=409, reason="Conflict")

    result = LabelSynchronizer(core).sync(_namespace({"app": "x"}), ["app"])

    assert not result.ok
    assert result.failed_kind == "pod"
    assert isinstance(result.error, ApiException)
    assert result.pods_updated == 1
    assert core.labels_of("pod", "default", "pod-1") == {"app": "x"}
    assert core.labels_of("pod", "default", "pod-2") == {}
    assert core.labels_of("pod", "default", "pod-3") == {}
    # The config map phase never ran.
    assert core.labels_of("configmap", "default", "settings") == {}


def test_sync_reports_config_map_list_failure() -> None:
    core = FakeCoreApi(pods={"default": [make_object("web", {})]})
    core.fail_list["configmap"] = ApiException(status=500, reason="boom")

    result = LabelSynchronizer(core).sync(_namespace({"app": "x"}), ["app"])

    assert not result.ok
    assert result.failed_kind == "configmap"
    assert result.pods_updated == 1


def test_sync_reports_transport_failure() -> None:
    core = FakeCoreApi()
    core.fail_list["pod"] = MaxRetryError(pool=None, url="/api/v1/namespaces/default/pods")

    result = LabelSynchronizer(core).sync(_namespace({"app": "x"}), ["app"])

    assert not result.ok
    assert result.failed_kind == "pod"
    assert isinstance(result.error, MaxRetryError)


def test_sync_is_idempotent() -> None:
    core = FakeCoreApi(pods={"default": [make_object("web", {"foo": "bar"})]})
    synchronizer = LabelSynchronizer(core)
    namespace = _namespace({"app": "web", "team": "a"})

    synchronizer.sync(namespace, ["app", "team"])
    first = dict(core.labels_of("pod", "default", "web") or {})
    synchronizer.sync(namespace, ["app", "team"])

    assert core.labels_of("pod", "default", "web") == first


def test_sync_observes_stop_request() -> None:
    core = FakeCoreApi(pods={"default": [make_object("pod-1", {}), make_object("pod-2", {})]})
    calls = {"count": 0}

    def should_stop() -> bool:
        calls["count"] += 1
        # Allow the phase check and the first object, then stop.
        return calls["count"] > 2

    result = LabelSynchronizer(core).sync(_namespace({"app": "x"}), ["app"], should_stop)

    assert result.cancelled
    assert not result.ok
    assert result.error is None
    assert core.updates == [("pod", "default", "pod-1")]
