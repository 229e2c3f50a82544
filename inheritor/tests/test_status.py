from __future__ import annotations

import pytest
from kubernetes.client import ApiException

from inheritor.src.kube import InheritorStore
from inheritor.src.status import StatusTracker
from inheritor.tests.fakes import FakeCustomObjectsApi, inheritor_object


def _tracker_and_resource(api: FakeCustomObjectsApi) -> tuple[StatusTracker, object]:
    store = InheritorStore(api, "default")  # type: ignore[arg-type]
    resource = store.get("t")
    assert resource is not None
    return StatusTracker(store), resource


def test_record_persists_entry() -> None:
    api = FakeCustomObjectsApi({"t": inheritor_object("t")})
    tracker, resource = _tracker_and_resource(api)

    tracker.record(resource, "default", synced=True)  # type: ignore[arg-type]

    assert api.status_writes == [
        {"namespaces": {"default": {"name": "default", "labelsSynced": True}}}
    ]


def test_record_failure_is_raised_and_local_entry_kept(caplog: pytest.LogCaptureFixture) -> None:
    api = FakeCustomObjectsApi({"t": inheritor_object("t")})
    api.status_errors.append(ApiException(status=500, reason="boom"))
    tracker, resource = _tracker_and_resource(api)

    with pytest.raises(ApiException):
        tracker.record(resource, "default", synced=False)  # type: ignore[arg-type]

    assert resource.status.namespaces["default"].labels_synced is False  # type: ignore[attr-defined]
    assert "Unable to update Inheritor t status" in caplog.text
