from __future__ import annotations

import pytest

from inheritor.src.models import (
    InheritanceSpec,
    InheritanceStatus,
    InheritorResource,
    Selector,
    SpecError,
)
from inheritor.tests.fakes import inheritor_object, selector


def test_selector_from_dict_reads_match_labels_and_keys() -> None:
    parsed = Selector.from_dict(selector({"env": "prod"}, ["app", "team"]))

    assert parsed.match_labels == {"env": "prod"}
    assert parsed.include_labels == ("app", "team")


def test_selector_collapses_duplicate_include_labels_keeping_order() -> None:
    parsed = Selector.from_dict(selector({}, ["team", "app", "team"]))

    assert parsed.include_labels == ("team", "app")


def test_selector_ignores_match_expressions(caplog: pytest.LogCaptureFixture) -> None:
    raw = {
        "namespaceSelector": {
            "matchLabels": {"env": "prod"},
            "matchExpressions": [{"key": "tier", "operator": "Exists"}],
        },
        "includeLabels": ["app"],
    }

    parsed = Selector.from_dict(raw)

    assert parsed.match_labels == {"env": "prod"}
    assert "matchExpressions" in caplog.text


@pytest.mark.parametrize(
    "raw",
    [
        "not-an-object",
        {"namespaceSelector": "env=prod"},
        {"namespaceSelector": {"matchLabels": ["env"]}},
        {"includeLabels": "app"},
        {"includeLabels": ["app", 3]},
    ],
)
def test_selector_rejects_malformed_input(raw: object) -> None:
    with pytest.raises(SpecError):
        Selector.from_dict(raw)


def test_spec_keeps_selector_order() -> None:
    spec = InheritanceSpec.from_dict(
        {"selectors": [selector({"a": "1"}, ["x"]), selector({"b": "2"}, ["y"])]}
    )

    assert [s.match_labels for s in spec.selectors] == [{"a": "1"}, {"b": "2"}]


def test_spec_missing_is_empty() -> None:
    assert InheritanceSpec.from_dict(None).selectors == ()
    assert InheritanceSpec.from_dict({}).selectors == ()


def test_spec_rejects_non_list_selectors() -> None:
    with pytest.raises(SpecError):
        InheritanceSpec.from_dict({"selectors": {"a": 1}})


def test_status_from_dict_round_trips_entries() -> None:
    status = InheritanceStatus.from_dict(
        {"namespaces": {"default": {"name": "default", "labelsSynced": True}}}
    )

    assert status.namespaces["default"].labels_synced is True
    assert status.to_dict() == {
        "namespaces": {"default": {"name": "default", "labelsSynced": True}}
    }


@pytest.mark.parametrize("raw", [None, {}, {"namespaces": None}])
def test_status_nil_map_normalizes_to_empty(raw: object) -> None:
    assert InheritanceStatus.from_dict(raw).namespaces == {}


def test_status_set_overwrites_entry() -> None:
    status = InheritanceStatus()
    status.set("default", True)
    status.set("default", False)

    assert status.namespaces["default"].labels_synced is False


def test_resource_from_object_keeps_metadata() -> None:
    obj = inheritor_object("test-inheritor", [selector({"env": "prod"}, ["app"])], generation=3)
    obj["metadata"]["resourceVersion"] = "42"

    resource = InheritorResource.from_object(obj)

    assert resource.name == "test-inheritor"
    assert resource.namespace == "default"
    assert resource.resource_version == "42"
    assert resource.generation == 3
    assert resource.status.namespaces == {}


def test_empty_resource_body_has_empty_spec_and_status() -> None:
    body = InheritorResource.empty("inheritor", "default").to_body()

    assert body["apiVersion"] == "labels.theisferre/v1"
    assert body["kind"] == "Inheritor"
    assert body["metadata"] == {"name": "inheritor", "namespace": "default"}
    assert body["spec"] == {"selectors": []}
    assert body["status"] == {"namespaces": {}}


def test_to_body_preserves_unmodelled_fields() -> None:
    obj = inheritor_object("x", [selector({"env": "prod"}, ["app"])])
    obj["metadata"]["labels"] = {"owner": "platform"}
    resource = InheritorResource.from_object(obj)
    resource.status.set("prod", True)

    body = resource.to_body()

    assert body["metadata"]["labels"] == {"owner": "platform"}
    assert body["spec"] == obj["spec"]
    assert body["status"] == {"namespaces": {"prod": {"name": "prod", "labelsSynced": True}}}
