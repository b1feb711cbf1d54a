import pytest

from audit_narrator.placeholders import (
    Placeholder,
    find_dangling_markers,
    format_path,
    get_at,
    retarget_path,
    scan,
    set_at,
)


def test_scan_walks_depth_first_in_document_order(sample_document):
    placeholders = scan(sample_document)
    paths = [p.path for p in placeholders]
    assert paths[0] == ("document", "title")
    assert ("audit", "scope", "in_scope", 0) in paths
    assert paths.index(("scorecard", "rows", 0, "finding", "summary")) < paths.index(
        ("scorecard", "rows", 1, "finding", "summary")
    )
    assert len(placeholders) == 17


def test_scan_reports_field_name_and_context_label():
    document = {"rows": [{"risk": "[MARKER: finding_risk for Response Time]"}]}
    [placeholder] = scan(document)
    assert placeholder.field_name == "finding_risk for Response Time"
    assert placeholder.base_name == "finding_risk"
    assert placeholder.context_label == "Response Time"
    assert placeholder.path_display == "rows[0].risk"


def test_scan_ignores_truncated_markers_but_dangling_check_finds_them():
    document = {"a": "ok", "b": "Intro [MARKER: finding_summ", "c": ["[MARKER: title]"]}
    assert [p.path for p in scan(document)] == [("c", 0)]
    assert find_dangling_markers(document) == [(("b",), "Intro [MARKER: finding_summ")]


def test_get_at_returns_none_for_missing_segments(sample_document):
    assert get_at(sample_document, ("prepared_for", "account_name")) == "Northside Dental Group"
    assert get_at(sample_document, ("scorecard", "rows", 9, "category")) is None
    assert get_at(sample_document, ("prepared_for", "account_name", "x")) is None


def test_set_at_creates_intermediate_containers():
    document = {}
    set_at(document, ("a", "b", 2, "c"), "value")
    assert document == {"a": {"b": [None, None, {"c": "value"}]}}


def test_set_at_rejects_string_key_on_list():
    with pytest.raises(TypeError):
        set_at({"a": []}, ("a", "key"), "value")


def test_array_placeholder_replaces_the_parent_list():
    document = {"a": {"b": ["[MARKER: scope_items]"]}}
    generated = ["one", "two", "three"]

    path = retarget_path(document, ("a", "b", 0), generated)
    set_at(document, path, generated)

    assert path == ("a", "b")
    assert get_at(document, ("a", "b")) == generated
    assert get_at(document, ("a", "b", 0)) == "one"


def test_retarget_leaves_scalar_values_and_longer_lists_alone():
    document = {"a": ["[MARKER: x]", "kept"]}
    assert retarget_path(document, ("a", 0), ["new"]) == ("a", 0)
    assert retarget_path({"a": ["[MARKER: x]"]}, ("a", 0), "text") == ("a", 0)


def test_format_path_and_placeholder_display():
    assert format_path(("fixes", "items", 0, "impact", "basis")) == "fixes.items[0].impact.basis"
    placeholder = Placeholder(path=("cta", "headline"), field_name="cta_headline", full_match="[MARKER: cta_headline]")
    assert placeholder.context_label == ""
