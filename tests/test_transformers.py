"""Tests for remote DTO conversions and category handling"""
import logging

from conftest import code, make_atomic
from measure_library.library.categories import category_for_element_type, infer_category
from measure_library.library.models import AtomicComponent, CompositeComponent
from measure_library.library.transformers import (
    component_from_dto,
    component_from_summary,
    component_to_atomic_dto,
    component_to_dto,
    map_approval_status,
    map_category,
)


class TestMapping:
    """Test category and status normalization"""

    def test_category_aliases(self):
        assert map_category("CONDITIONS") == "conditions"
        assert map_category("IMMUNIZATIONS") == "medications"
        assert map_category("laboratory") == "laboratory"
        assert map_category(None) == "clinical-observations"

    def test_unknown_category_defaults_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert map_category("astrology") == "clinical-observations"
        assert "astrology" in caplog.text

    def test_approval_status(self):
        assert map_approval_status("APPROVED") == "approved"
        assert map_approval_status("pending_review") == "pending_review"
        assert map_approval_status("whatever") == "draft"
        assert map_approval_status(None) == "draft"


class TestFromRemote:
    """Test remote to local conversion"""

    def test_summary_becomes_placeholder(self):
        component = component_from_summary(
            {"id": "a", "name": "Colonoscopy", "status": "APPROVED", "category": "PROCEDURES", "usageCount": 4}
        )
        assert isinstance(component, AtomicComponent)
        assert component.status == "approved"
        assert component.metadata.category == "procedures"
        assert component.usage.usage_count == 0
        assert component.value_set.name == "Unknown"

    def test_nested_detail_dto(self):
        component = component_from_dto(
            {
                "id": "a",
                "name": "Colonoscopy",
                "valueSet": {"oid": "1.2.3", "name": "Colonoscopy", "codes": [{"code": "44388", "system": "CPT"}]},
                "timing": {"type": "within", "duration": 10, "unit": "years"},
                "versionInfo": {"versionId": "1.1", "status": "approved"},
                "usage": {"measureIds": ["CMS130", "CMS130"]},
                "metadata": {"category": "PROCEDURES", "tags": ["screening"]},
            }
        )
        assert component.value_set.oid == "1.2.3"
        assert [c.code for c in component.codes] == ["44388"]
        assert component.timing["operator"] == "within"
        assert component.timing["quantity"] == 10
        assert component.version_info.version_id == "1.1"
        assert component.version_info.history
        assert component.usage.measure_ids == ["CMS130"]
        assert component.metadata.tags == ["screening"]

    def test_flat_dto(self):
        component = component_from_dto(
            {"id": "a", "valueSetOid": "N/A", "valueSetName": "Hospice", "codes": [{"code": "1", "system": "SNOMEDCT"}]}
        )
        assert component.value_set.oid is None
        assert component.value_set.name == "Hospice"
        assert len(component.codes) == 1

    def test_composite_dto(self):
        component = component_from_dto(
            {
                "id": "c",
                "type": "composite",
                "operator": "or",
                "childComponents": [{"id": "a"}, {"id": "b", "versionId": "2.0"}],
            }
        )
        assert isinstance(component, CompositeComponent)
        assert component.operator == "OR"
        assert [c.component_id for c in component.children] == ["a", "b"]


class TestToRemote:
    """Test local to remote conversion"""

    def test_flat_atomic_dto(self):
        component = make_atomic("a", name="Colonoscopy", oid="1.2.3", codes=[code("44388")], status="approved")
        dto = component_to_atomic_dto(component)
        assert dto["valueSetOid"] == "1.2.3"
        assert dto["valueSetName"] == "Colonoscopy"
        assert dto["codes"] == [{"code": "44388", "system": "CPT", "display": None}]
        assert dto["status"] == "approved"
        assert dto["timing"]["operator"] == "during"

    def test_missing_oid_falls_back_to_name(self):
        component = make_atomic("a", name="Colonoscopy")
        assert component_to_atomic_dto(component)["valueSetOid"] == "Colonoscopy"

    def test_dispatch_on_kind(self):
        composite = CompositeComponent(id="c", operator="AND")
        assert "children" in component_to_dto(composite)
        assert "valueSetOid" in component_to_dto(make_atomic("a"))


class TestCategories:
    """Test category inference"""

    def test_element_type_mapping(self):
        assert category_for_element_type("diagnosis") == "conditions"
        assert category_for_element_type("Encounter") == "encounters"
        assert category_for_element_type("unknown") == "clinical-observations"

    def test_demographics_from_gender(self):
        component = make_atomic("female")
        component.gender_value = "female"
        assert infer_category(component) == "demographics"

    def test_keywords(self):
        assert infer_category(make_atomic("a", name="Hospice Care Ambulatory")) == "exclusions"
        assert infer_category(make_atomic("b", name="Office Visit")) == "encounters"
        assert infer_category(make_atomic("c", name="HbA1c Laboratory Test")) == "laboratory"
        assert infer_category(make_atomic("d", name="Something else")) == "clinical-observations"
