"""Tests for usage derivation and rebuilds"""
from conftest import code, make_atomic, make_element, make_measure
from measure_library.library.store import ComponentStore
from measure_library.library.usage import UsageIndex


class TestDerive:
    """Test usage derivation from measures"""

    def test_explicit_links_only(self):
        measures = [
            make_measure("M1", make_element("e1", component_id="a"), make_element("e2", component_id="b")),
            make_measure("M2", make_element("e1", component_id="a"), make_element("e2", component_id="unlinkable")),
        ]
        index = UsageIndex().derive(measures)
        assert index == {"a": {"M1", "M2"}, "b": {"M1"}}

    def test_catalogue_fallback_matches_unlinked_elements(self):
        catalogue = [make_atomic("a", oid="1.2.3")]
        measures = [make_measure("M1", make_element("e1", oid="1.2.3"), make_element("e2", oid="9.9.9"))]
        index = UsageIndex().derive(measures, catalogue=catalogue)
        assert index == {"a": {"M1"}}


class TestRebuild:
    """Test rebuilding usage in the store"""

    def test_rebuild_overwrites_usage(self):
        store = ComponentStore([make_atomic("a", measure_ids=["STALE"]), make_atomic("b")])
        measures = [make_measure("M1", make_element("e1", component_id="b"))]
        result = UsageIndex().rebuild(store, measures)
        assert store.get("a").usage.measure_ids == []
        assert store.get("b").usage.measure_ids == ["M1"]
        assert sorted(result.updated_ids) == ["a", "b"]

    def test_rebuild_is_idempotent(self):
        store = ComponentStore([make_atomic("a")])
        measures = [make_measure("M1", make_element("e1", component_id="a"))]
        index = UsageIndex()
        index.rebuild(store, measures)
        before = store.get("a").to_dict()
        second = index.rebuild(store, measures)
        assert second.updated_ids == []
        assert store.get("a").to_dict() == before

    def test_losing_usage_never_archives(self):
        store = ComponentStore([make_atomic("a", status="approved", measure_ids=["M1"])])
        UsageIndex().rebuild(store, [])
        component = store.get("a")
        assert component.usage.usage_count == 0
        assert component.status == "approved"

    def test_archived_component_restored_when_used_again(self):
        component = make_atomic("a", status="approved")
        component.version_info.status = "archived"
        store = ComponentStore([component])

        result = UsageIndex().rebuild(store, [make_measure("M1", make_element("e1", component_id="a"))])
        restored = store.get("a")
        assert result.restored_ids == ["a"]
        assert restored.status == "approved"
        assert "Restored from archive" in restored.version_info.history[-1].change_description

    def test_dangling_links_reported(self):
        store = ComponentStore([make_atomic("a")])
        result = UsageIndex().rebuild(store, [make_measure("M1", make_element("e1", component_id="ghost"))])
        assert result.dangling == [("M1", "e1", "ghost")]

    def test_recalculate_counts_matcher_hits(self):
        store = ComponentStore([make_atomic("a", codes=[code("1")])])
        measures = [make_measure("M1", make_element("e1", codes=[code("1")]))]
        result = UsageIndex().recalculate(store, measures)
        assert result.inferred == 1
        assert store.get("a").usage.measure_ids == ["M1"]
