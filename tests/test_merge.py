"""Tests for merging duplicate components"""
from conftest import code, make_atomic, make_element, make_measure
from measure_library.library.merge import MergeEngine, union_value_sets
from measure_library.library.models import CompositeComponent
from measure_library.library.store import ComponentStore
from measure_library.measures.collection import MeasureCollection
from measure_library.measures.models import iter_measure_elements


def build_store():
    return ComponentStore(
        [
            make_atomic(
                "a", name="Colonoscopy", oid="1.1", codes=[code("44388")], measure_ids=["M1"], status="approved"
            ),
            make_atomic("b", name="Colonoscopy (alt)", oid="2.2", codes=[code("45378")], measure_ids=["M2"]),
            make_atomic("dup", name="Colonoscopy dup", oid="1.1", codes=[code("44389")], measure_ids=["M1", "M3"]),
        ]
    )


class TestValidation:
    """Test merge preconditions"""

    def test_needs_two_unique_components(self):
        engine = MergeEngine(build_store())
        result = engine.merge(["a", "a"])
        assert not result.success
        assert "At least two" in result.error

    def test_missing_component(self):
        store = build_store()
        before = {c.id: c.to_dict() for c in store.all()}
        result = MergeEngine(store).merge(["a", "ghost"])
        assert not result.success
        assert "ghost" in result.error
        assert {c.id: c.to_dict() for c in store.all()} == before

    def test_archived_input_rejected(self):
        store = build_store()
        store.put(make_atomic("old", status="archived"))
        result = MergeEngine(store).merge(["a", "old"])
        assert not result.success
        assert "Archived" in result.error

    def test_needs_two_atomics(self):
        store = build_store()
        store.put(CompositeComponent(id="comp"))
        result = MergeEngine(store).merge(["a", "comp"])
        assert not result.success
        assert "atomic" in result.error


class TestMerge:
    """Test the merged component and archived inputs"""

    def test_merged_component(self):
        store = build_store()
        result = MergeEngine(store).merge(["a", "b"], name="Colonoscopy", merged_by="reviewer", new_id="merged-1")
        assert result.success
        merged = store.get("merged-1")
        assert merged is result.component
        assert merged.status == "draft"
        assert merged.usage.measure_ids == ["M1", "M2"]
        assert [vs.oid for vs in merged.all_value_sets()] == ["1.1", "2.2"]
        assert merged.metadata.created_by == "reviewer"

    def test_inputs_archived_with_history(self):
        store = build_store()
        result = MergeEngine(store).merge(["a", "b"], name="Colonoscopy", new_id="merged-1")
        assert result.archived_ids == ["a", "b"]
        for component_id in ("a", "b"):
            component = store.get(component_id)
            assert component.is_archived
            assert "Merged into Colonoscopy (merged-1)" in component.version_info.history[-1].change_description

    def test_value_sets_with_same_oid_fold_codes(self):
        folded = union_value_sets([build_store().get("a"), build_store().get("dup")])
        assert len(folded) == 1
        assert [c.code for c in folded[0].codes] == ["44388", "44389"]

    def test_generated_id(self):
        result = MergeEngine(build_store()).merge(["a", "b"])
        assert result.component.id.startswith("merged-")


class TestUpdateMeasureReferences:
    """Test re-pointing measures after a merge"""

    def test_links_repointed_in_one_batch(self):
        store = build_store()
        measures = MeasureCollection(
            [
                make_measure("M1", make_element("e1", oid="1.1", component_id="a")),
                make_measure("M2", make_element("e1", oid="2.2", component_id="b")),
                make_measure("M3", make_element("e1", oid="9.9", component_id="dup")),
            ]
        )
        untouched = measures.get("M3")
        engine = MergeEngine(store)
        merge = engine.merge(["a", "b"], new_id="merged-1")

        result = engine.update_measure_references_after_merge(merge.archived_ids, "merged-1", measures)
        assert result.success
        assert result.updated_ids == ["M1", "M2"]
        assert result.diagnostics == []
        for measure_id in ("M1", "M2"):
            element = next(iter_measure_elements(measures.get(measure_id)))
            assert element.library_component_id == "merged-1"
        assert measures.get("M3") is untouched

    def test_remaining_archived_links_reported(self):
        store = build_store()
        store.put(make_atomic("retired", status="archived"))
        measures = MeasureCollection([make_measure("M9", make_element("e1", component_id="retired"))])
        engine = MergeEngine(store)
        merge = engine.merge(["a", "b"], new_id="merged-1")
        result = engine.update_measure_references_after_merge(merge.archived_ids, "merged-1", measures)
        assert result.success
        assert result.diagnostics == ["M9/e1 -> retired (archived)"]
