"""Tests for ComponentLibraryService commands, queries, linking and sync"""
import logging

import pytest

from conftest import COLONOSCOPY_OID, DIABETES_OID, code, make_atomic, make_element, make_measure
from measure_library.api.resilience import CircuitBreaker
from measure_library.core.config import CircuitBreakerConfig
from measure_library.core.exceptions import RemoteStoreError
from measure_library.library.models import (
    ComponentReference,
    CompositeComponent,
    Linked,
    Skipped,
    Unlinkable,
)
from measure_library.library.persistence import LibraryStateStore
from measure_library.library.service import ComponentLibraryService, bump_version, slugify
from measure_library.measures.models import ValueSet, iter_measure_elements


def unavailable():
    return RemoteStoreError("Remote store unavailable", status_code=503, operation="createComponent")


def elements_by_id(measure):
    return {e.id: e for e in iter_measure_elements(measure)}


class TestHelpers:
    def test_slugify(self):
        assert slugify("Colonoscopy 10y") == "colonoscopy-10y"
        assert slugify("  HbA1c > 9% (Poor Control) ") == "hba1c-9-poor-control"
        assert slugify("!!!") == "component"

    def test_bump_version(self):
        assert bump_version("1.0") == "1.1"
        assert bump_version("1.9") == "2.0"
        assert bump_version("draft") == "1.1"


class TestAddAndUpdate:
    """Test component creation and field updates"""

    def test_add_pushes_create(self, service, remote_client):
        service.add_component(make_atomic("a", oid=COLONOSCOPY_OID))
        assert service.get("a") is not None
        assert remote_client.calls == [("create_atomic_component", "a")]
        assert service.get_sync_status()["is_synced"]

    def test_add_duplicate_rejected(self, service):
        service.add_component(make_atomic("a"))
        with pytest.raises(ValueError, match="already exists"):
            service.add_component(make_atomic("a"))

    def test_auto_categorize(self, service):
        component = service.add_component(make_atomic("visit", name="Office Visit"), auto_categorize=True)
        assert component.metadata.category == "encounters"
        assert component.metadata.category_auto_assigned

    def test_manual_category_clears_auto_flag(self, service):
        service.add_component(make_atomic("visit", name="Office Visit"), auto_categorize=True)
        updated = service.update_component("visit", {"category": "procedures"}, updated_by="reviewer")
        assert updated.metadata.category == "procedures"
        assert not updated.metadata.category_auto_assigned
        assert updated.metadata.updated_by == "reviewer"

    def test_auto_category_follows_value_set(self, service):
        service.add_component(make_atomic("visit", name="Office Visit"), auto_categorize=True)
        updated = service.update_component("visit", {"value_set": ValueSet(name="Hospice Care")})
        assert updated.metadata.category == "exclusions"

    def test_manual_category_survives_value_set_change(self, service):
        service.add_component(make_atomic("visit", name="Office Visit", category="procedures"))
        updated = service.update_component("visit", {"value_set": ValueSet(name="Hospice Care")})
        assert updated.metadata.category == "procedures"

    def test_unknown_field_rejected(self, service):
        service.add_component(make_atomic("a"))
        with pytest.raises(ValueError, match="status"):
            service.update_component("a", {"status": "approved"})

    def test_update_unknown_component(self, service):
        assert service.update_component("ghost", {"name": "x"}) is None

    def test_update_pushes_update(self, service, remote_client):
        service.add_component(make_atomic("a"))
        service.update_component("a", {"name": "Renamed"})
        assert remote_client.call_names() == ["create_atomic_component", "update_component"]

    def test_code_regenerated_on_code_affecting_change(self, library_config, remote_client):
        generated = []

        def generator(component, catalogue):
            generated.append(component.id)
            return f"[{component.name}]"

        svc = ComponentLibraryService(config=library_config, client=remote_client, code_generator=generator)
        svc.add_component(make_atomic("a", name="Colonoscopy"))
        assert svc.get("a").generated_code == "[Colonoscopy]"
        svc.update_component("a", {"tags": ["screening"]})
        assert generated == ["a"]
        svc.update_component("a", {"name": "Colonoscopy 10y"})
        assert svc.get("a").generated_code == "[Colonoscopy 10y]"
        svc.close()

    def test_failing_code_generator_does_not_block(self, library_config, caplog):
        def generator(component, catalogue):
            raise RuntimeError("template missing")

        svc = ComponentLibraryService(config=library_config, code_generator=generator)
        with caplog.at_level(logging.WARNING):
            svc.add_component(make_atomic("a"))
        assert svc.get("a").generated_code is None
        assert "Code generation failed" in caplog.text


class TestDeleteAndArchive:
    """Test commands refused while a component is in use"""

    def test_delete_in_use_rejected(self, service, remote_client):
        service.add_component(make_atomic("a", measure_ids=["CMS130"]))
        result = service.delete_component("a")
        assert not result.success
        assert result.measure_ids == ["CMS130"]
        assert service.get("a") is not None
        assert "delete_component" not in remote_client.call_names()

    def test_delete_unused(self, service, remote_client):
        service.add_component(make_atomic("a"))
        result = service.delete_component("a")
        assert result.success
        assert result.backend_deleted is True
        assert service.get("a") is None
        assert remote_client.call_names()[-1] == "delete_component"

    def test_delete_missing(self, service):
        assert not service.delete_component("ghost").success

    def test_delete_after_failed_create_sends_nothing(self, service, remote_client):
        remote_client.fail_with = unavailable()
        service.add_component(make_atomic("a"))
        assert "a" in service.sync_queue
        result = service.delete_component("a")
        assert result.success
        assert result.backend_deleted is False
        assert "a" not in service.sync_queue
        assert remote_client.call_names() == ["create_atomic_component"]

    def test_archive_in_use_rejected(self, service):
        service.add_component(make_atomic("a", measure_ids=["CMS130"]))
        result = service.archive_component("a")
        assert not result.success
        assert service.get("a").status == "draft"

    def test_archive_unused(self, service, remote_client):
        service.add_component(make_atomic("a"))
        assert service.archive_component("a", superseded_by="b").success
        component = service.get("a")
        assert component.is_archived
        assert component.version_info.history[-1].superseded_by == "b"
        assert remote_client.call_names()[-2:] == ["update_component", "archive_component"]


class TestApprovalAndVersions:
    def test_approve_uses_dedicated_endpoint(self, service, remote_client):
        service.add_component(make_atomic("a"))
        approved = service.approve_component("a", "reviewer")
        assert approved.status == "approved"
        assert approved.version_info.approved_by == "reviewer"
        assert remote_client.call_names() == ["create_atomic_component", "approve_component"]

    def test_failed_approve_queued_as_update(self, service, remote_client):
        service.add_component(make_atomic("a"))
        remote_client.fail_with = unavailable()
        service.approve_component("a", "reviewer")
        assert service.get("a").status == "approved"
        assert service.sync_queue.get("a").operation == "update"

    def test_create_version(self, service):
        service.add_component(make_atomic("a", status="approved"))
        updated = service.create_version("a", {"negation": True}, "reviewer", "Exclude performed")
        assert updated.version_info.version_id == "1.1"
        assert updated.status == "draft"
        assert updated.negation
        assert updated.version_info.history[-1].change_description == "Exclude performed"

    def test_create_version_of_archived_rejected(self, service):
        service.add_component(make_atomic("a", status="archived"))
        with pytest.raises(ValueError, match="archived"):
            service.create_version("a", {}, "reviewer")


class TestSharedEdit:
    """Test editing a component shared by several measures"""

    def test_update_all_versions_in_place(self, service, remote_client):
        service.add_component(make_atomic("a", status="approved", measure_ids=["M1", "M2"]))
        updated = service.shared_edit("a", {"negation": True}, "update_all", "reviewer")
        assert updated.id == "a"
        assert updated.version_info.version_id == "1.1"
        assert updated.usage.measure_ids == ["M1", "M2"]
        assert service.get("a").negation
        assert remote_client.call_names() == ["create_atomic_component", "update_component"]

    def test_create_version_forks_for_one_measure(self, service, measures, remote_client):
        service.add_component(make_atomic("a", oid=COLONOSCOPY_OID, status="approved", measure_ids=["M1", "M2"]))
        measures.upsert(make_measure("M1", make_element("e1", oid=COLONOSCOPY_OID, component_id="a")))

        forked = service.shared_edit("a", {"negation": True}, "create_version", "alice", measure_id="M1")

        assert forked.id.startswith("a-v")
        assert forked.status == "draft"
        assert forked.version_info.version_id == "1.1"
        assert forked.usage.measure_ids == ["M1"]
        assert forked.metadata.created_by == "alice"
        original = service.get("a")
        assert original.version_info.version_id == "1.0"
        assert original.status == "approved"
        assert not original.negation
        assert original.usage.measure_ids == ["M2"]
        assert elements_by_id(measures.get("M1"))["e1"].library_component_id == forked.id
        assert remote_client.call_names() == ["create_atomic_component", "create_atomic_component", "update_component"]

    def test_fork_without_measure_leaves_original_untouched(self, service, remote_client):
        service.add_component(make_atomic("a", measure_ids=["M1"]))
        forked = service.shared_edit("a", {"name": "A (variant)"}, "create_version", "alice")
        assert forked.name == "A (variant)"
        assert forked.usage.measure_ids == []
        assert service.get("a").usage.measure_ids == ["M1"]
        assert remote_client.call_names() == ["create_atomic_component", "create_atomic_component"]

    def test_unknown_action_rejected(self, service):
        service.add_component(make_atomic("a"))
        with pytest.raises(ValueError, match="Unknown shared edit action"):
            service.shared_edit("a", {}, "overwrite", "alice")

    def test_missing_component(self, service):
        assert service.shared_edit("missing", {}, "create_version", "alice") is None


class TestDerivedAssessments:
    """Test complexity and OID validation kept on stored components"""

    def test_add_scores_and_validates(self, service):
        service.oid_catalog = {COLONOSCOPY_OID: "Colonoscopy"}
        component = service.add_component(
            make_atomic("a", name="Colonoscopy", oid=COLONOSCOPY_OID, codes=[code("44388")])
        )
        assert component.complexity.level == "low"
        assert component.complexity.score == 2
        assert component.oid_validation.status == "valid"
        assert component.oid_validation.catalog_name == "Colonoscopy"

    def test_value_set_change_revalidates(self, service):
        service.add_component(make_atomic("a", oid=COLONOSCOPY_OID, codes=[code("44388")]))
        assert service.get("a").oid_validation.status == "unknown"
        updated = service.update_component("a", {"value_set": ValueSet(oid="1.2.x", name="Broken")})
        assert updated.oid_validation.status == "invalid"
        assert updated.complexity.factors.get("zeroCodes") is True

    def test_composite_scored_from_children(self, service):
        service.add_component(make_atomic("a", codes=[code("1")]))
        service.add_component(make_atomic("b", codes=[code("2")], negation=True))
        composite = service.add_component(
            CompositeComponent(id="both", operator="AND", children=[ComponentReference("a"), ComponentReference("b")])
        )
        # a=2, b=4, one extra AND child
        assert composite.complexity.score == 7
        assert composite.complexity.level == "medium"

    def test_created_by_linking_is_scored(self, service):
        result = service.link_measure(make_measure("M1", make_element("e1", oid=COLONOSCOPY_OID, name="Colonoscopy")))
        created = service.get(result.created_ids[0])
        assert created.complexity.score == 4
        assert created.complexity.factors["zeroCodes"] is True
        assert created.oid_validation.status == "unknown"

    def test_load_scores_catalogue(self, service, remote_client):
        remote_client.summaries = [{"id": "a", "name": "A"}, {"id": "both", "name": "Both"}]
        remote_client.components = {
            "a": {"id": "a", "name": "A", "valueSetOid": COLONOSCOPY_OID},
            "both": {
                "id": "both",
                "type": "composite",
                "operator": "OR",
                "childComponents": [{"id": "a", "name": "A"}],
            },
        }
        service.load_from_api()
        assert service.get("a").complexity.score == 4
        assert service.get("a").oid_validation is not None
        assert service.get("both").complexity.score == 4


class TestUsageCommands:
    def test_add_usage(self, service, remote_client):
        service.add_component(make_atomic("a"))
        assert service.add_usage("a", "CMS130")
        assert not service.add_usage("a", "CMS130")
        assert service.get("a").usage.measure_ids == ["CMS130"]
        assert ("record_usage", "a", "CMS130") in remote_client.calls

    def test_remove_usage(self, service, remote_client):
        service.add_component(make_atomic("a", measure_ids=["CMS130"]))
        assert service.remove_usage("a", "CMS130")
        assert not service.remove_usage("a", "CMS130")
        assert service.get("a").usage.usage_count == 0
        assert remote_client.call_names() == ["create_atomic_component", "update_component"]

    def test_failed_usage_removal_queued(self, service, remote_client):
        service.add_component(make_atomic("a", measure_ids=["CMS130"]))
        remote_client.fail_with = unavailable()
        service.remove_usage("a", "CMS130")
        assert service.sync_queue.get("a").operation == "update"


class TestRetryPendingSync:
    """Test the pending sync queue across retries"""

    def test_failed_create_is_queued(self, service, remote_client):
        remote_client.fail_with = unavailable()
        service.add_component(make_atomic("a"))
        entry = service.sync_queue.get("a")
        assert entry.operation == "create"
        assert entry.retry_count == 1
        assert "unavailable" in entry.last_error
        assert service.get_sync_status()["pending_ids"] == ["a"]

    def test_deferred_until_backoff_elapses(self, service, remote_client, clock):
        remote_client.fail_with = unavailable()
        service.add_component(make_atomic("a"))
        remote_client.fail_with = None

        summary = service.retry_pending_sync()
        assert summary.deferred == ["a"]

        clock.advance(1.0)
        summary = service.retry_pending_sync()
        assert summary.synced == ["a"]
        assert len(service.sync_queue) == 0

    def test_force_bypasses_backoff(self, service, remote_client):
        remote_client.fail_with = unavailable()
        service.add_component(make_atomic("a"))
        remote_client.fail_with = None
        assert service.retry_pending_sync(force=True).synced == ["a"]

    def test_abandoned_after_max_retries(self, service, remote_client):
        remote_client.fail_with = unavailable()
        service.add_component(make_atomic("a"))
        assert service.retry_pending_sync(force=True).failed == ["a"]
        assert service.retry_pending_sync(force=True).failed == ["a"]
        calls_before = len(remote_client.calls)

        summary = service.retry_pending_sync(force=True)
        assert summary.abandoned == ["a"]
        assert len(remote_client.calls) == calls_before

    def test_delete_of_component_remote_never_stored(self, service, remote_client):
        service.store.put(make_atomic("y"))
        remote_client.fail_with = RemoteStoreError("Not found", status_code=404, operation="deleteComponent")
        result = service.delete_component("y")
        assert result.success
        assert result.backend_deleted
        assert service.get_sync_status()["is_synced"]

    def test_force_lifts_remote_sync_pause(self, service, remote_client):
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1, timeout_seconds=60))
        remote_client.circuit_breaker = breaker
        remote_client.fail_with = unavailable()
        service.add_component(make_atomic("a"))
        breaker.record_failure(unavailable())
        status = service.get_sync_status()
        assert status["circuit_state"] == "open"
        assert status["remote_paused_seconds"] > 0

        remote_client.fail_with = None
        assert service.retry_pending_sync(force=True).synced == ["a"]
        assert service.get_sync_status()["circuit_state"] == "closed"

    def test_queued_delete_cleared_when_remote_reports_missing(self, service, remote_client):
        service.store.put(make_atomic("y"))
        remote_client.fail_with = unavailable()
        service.delete_component("y")
        assert service.sync_queue.get("y").operation == "delete"

        remote_client.fail_with = RemoteStoreError("Not found", status_code=404, operation="deleteComponent")
        assert service.retry_pending_sync(force=True).synced == ["y"]
        assert service.get_sync_status()["is_synced"]
        assert service.get_sync_status()["abandoned_ids"] == ["a"]

    def test_local_change_revives_abandoned_entry(self, service, remote_client):
        remote_client.fail_with = unavailable()
        service.add_component(make_atomic("a"))
        service.retry_pending_sync(force=True)
        service.retry_pending_sync(force=True)
        remote_client.fail_with = None
        service.update_component("a", {"name": "Renamed"})
        assert len(service.sync_queue) == 0
        assert remote_client.call_names()[-1] == "create_atomic_component"

    def test_entry_for_missing_component_cleared(self, service):
        service.sync_queue.record_failure("ghost", "update", "HTTP 503")
        summary = service.retry_pending_sync(force=True)
        assert summary.cleared == ["ghost"]
        assert len(service.sync_queue) == 0

    def test_pending_delete_retried_without_component(self, service, remote_client):
        service.add_component(make_atomic("a"))
        remote_client.fail_with = unavailable()
        service.delete_component("a")
        assert service.sync_queue.get("a").operation == "delete"
        remote_client.fail_with = None
        assert service.retry_pending_sync(force=True).synced == ["a"]
        assert remote_client.call_names()[-1] == "delete_component"

    def test_concurrent_pass_skipped(self, service):
        assert service.sync_queue.begin_retry_pass()
        assert service.retry_pending_sync().already_running
        service.sync_queue.end_retry_pass()

    def test_no_client_keeps_changes_local(self, library_config):
        svc = ComponentLibraryService(config=library_config)
        svc.add_component(make_atomic("a"))
        assert svc.sync_queue.get("a").last_error == "No remote client configured"


class TestBackgroundSync:
    def test_remote_calls_run_off_the_caller_thread(self, library_config, remote_client):
        library_config.sync.background = True
        svc = ComponentLibraryService(config=library_config, client=remote_client)
        svc.add_component(make_atomic("a"))
        svc.update_component("a", {"name": "Renamed"})
        assert svc.wait_for_sync(timeout=5)
        assert remote_client.call_names() == ["create_atomic_component", "update_component"]
        svc.close()
        assert remote_client.closed


class TestQueries:
    """Test search, filters and category counts"""

    @pytest.fixture
    def populated(self, service):
        colonoscopy = make_atomic(
            "colonoscopy", name="Colonoscopy", oid=COLONOSCOPY_OID, status="approved",
            measure_ids=["CMS130", "CMS999"], category="procedures",
        )
        visit = make_atomic("visit", name="Office Visit", status="draft", measure_ids=["CMS130"], category="encounters")
        old = make_atomic("aardvark", name="Aardvark", status="archived", category="procedures")
        for component in (colonoscopy, visit, old):
            service.store.put(component)
        return service

    def test_default_hides_archived(self, populated):
        assert [c.id for c in populated.search()] == ["colonoscopy", "visit"]

    def test_archived_sorted_last(self, populated):
        assert [c.id for c in populated.search(show_archived=True)] == ["colonoscopy", "visit", "aardvark"]

    def test_query_matches_oid(self, populated):
        assert [c.id for c in populated.search(query="1003.108")] == ["colonoscopy"]

    def test_filters(self, populated):
        assert [c.id for c in populated.search(category="encounters")] == ["visit"]
        assert [c.id for c in populated.search(statuses=["draft"])] == ["visit"]

    def test_sort_by_usage(self, populated):
        assert [c.id for c in populated.search(sort_by="usage")] == ["visit", "colonoscopy"]
        assert [c.id for c in populated.search(sort_by="usage", descending=True)] == ["colonoscopy", "visit"]

    def test_category_counts_exclude_archived(self, populated):
        assert populated.get_category_counts() == {"procedures": 1, "encounters": 1}

    def test_get_by_status(self, populated):
        assert [c.id for c in populated.get_by_status("archived")] == ["aardvark"]


class TestLinking:
    """Test linking measure elements to the catalogue"""

    def test_new_element_creates_draft(self, service, measures, remote_client):
        measure = make_measure(
            "CMS130",
            make_element("e1", oid=COLONOSCOPY_OID, codes=[code("44388"), code("44389")], name="Colonoscopy 10y"),
        )
        result = service.import_measure(measure)

        assert result.outcomes["e1"] == Linked("colonoscopy-10y", created=True)
        component = service.get("colonoscopy-10y")
        assert component.status == "draft"
        assert component.metadata.category == "procedures"
        assert component.metadata.category_auto_assigned
        assert component.usage.measure_ids == ["CMS130"]
        assert elements_by_id(measures.get("CMS130"))["e1"].library_component_id == "colonoscopy-10y"
        assert ("create_atomic_component", "colonoscopy-10y") in remote_client.calls

    def test_prefers_approved_component(self, service):
        service.store.put(make_atomic("draft-copy", oid=COLONOSCOPY_OID, status="draft"))
        service.store.put(make_atomic("approved-copy", oid=COLONOSCOPY_OID, status="approved"))
        result = service.link_measure(make_measure("CMS130", make_element("e1", oid=COLONOSCOPY_OID)))
        assert result.outcomes["e1"] == Linked("approved-copy")
        assert service.get("draft-copy").usage.usage_count == 0

    def test_codes_backfilled_onto_element(self, service):
        service.store.put(make_atomic("a", oid=COLONOSCOPY_OID, codes=[code("44388")], status="approved"))
        result = service.link_measure(make_measure("CMS130", make_element("e1", oid=COLONOSCOPY_OID)))
        element = elements_by_id(result.measure)["e1"]
        assert [c.code for c in element.value_set.codes] == ["44388"]
        assert element.library_component_id == "a"

    def test_codes_backfilled_into_component(self, service):
        service.store.put(make_atomic("a", oid=COLONOSCOPY_OID, status="approved"))
        service.link_measure(make_measure("CMS130", make_element("e1", oid=COLONOSCOPY_OID, codes=[code("44388")])))
        assert [c.code for c in service.get("a").codes] == ["44388"]

    def test_unlinkable_and_skipped(self, service):
        measure = make_measure("M1", make_element("empty-vs", codes=[]), make_element("bare"))
        result = service.link_measure(measure)
        assert isinstance(result.outcomes["empty-vs"], Unlinkable)
        assert isinstance(result.outcomes["bare"], Skipped)
        elements = elements_by_id(result.measure)
        assert elements["empty-vs"].library_component_id == "unlinkable"
        assert elements["bare"].library_component_id is None
        assert len(service.components()) == 0

    def test_existing_link_kept(self, service):
        service.store.put(make_atomic("a", oid=DIABETES_OID))
        result = service.link_measure(make_measure("M1", make_element("e1", oid=COLONOSCOPY_OID, component_id="a")))
        assert result.outcomes["e1"] == Linked("a")
        assert service.get("a").usage.measure_ids == ["M1"]

    def test_link_to_draft_moves_to_approved_duplicate(self, service):
        service.store.put(make_atomic("draft-copy", oid=COLONOSCOPY_OID))
        service.store.put(make_atomic("approved-copy", oid=COLONOSCOPY_OID, status="approved"))
        result = service.link_measure(
            make_measure("M1", make_element("e1", oid=COLONOSCOPY_OID, component_id="draft-copy"))
        )
        assert result.outcomes["e1"] == Linked("approved-copy")
        assert elements_by_id(result.measure)["e1"].library_component_id == "approved-copy"
        assert service.get("approved-copy").usage.measure_ids == ["M1"]
        assert service.get("draft-copy").usage.measure_ids == []

    def test_link_to_draft_kept_without_approved_duplicate(self, service):
        service.store.put(make_atomic("draft-copy", oid=COLONOSCOPY_OID))
        service.store.put(make_atomic("other", oid=COLONOSCOPY_OID))
        result = service.link_measure(
            make_measure("M1", make_element("e1", oid=COLONOSCOPY_OID, component_id="draft-copy"))
        )
        assert result.outcomes["e1"] == Linked("draft-copy")
        assert service.get("other").usage.measure_ids == []

    def test_link_to_archived_rematched(self, service):
        service.store.put(make_atomic("old", oid=COLONOSCOPY_OID, status="archived"))
        service.store.put(make_atomic("new", oid=COLONOSCOPY_OID, status="approved"))
        result = service.link_measure(make_measure("M1", make_element("e1", oid=COLONOSCOPY_OID, component_id="old")))
        assert result.outcomes["e1"] == Linked("new")
        assert elements_by_id(result.measure)["e1"].library_component_id == "new"

    def test_id_collision_gets_suffix(self, service):
        service.store.put(make_atomic("colonoscopy", oid=DIABETES_OID))
        result = service.link_measure(make_measure("M1", make_element("e1", oid=COLONOSCOPY_OID, name="Colonoscopy")))
        assert result.created_ids == ["colonoscopy-2"]

    def test_composite_matched_by_children(self, service):
        service.store.put(make_atomic("a", oid=COLONOSCOPY_OID, status="approved"))
        service.store.put(make_atomic("b", oid=DIABETES_OID, status="approved"))
        service.store.put(
            CompositeComponent(
                id="both", operator="AND", children=[ComponentReference("a"), ComponentReference("b")]
            )
        )
        measure = make_measure("M1", make_element("e1", oid=COLONOSCOPY_OID), make_element("e2", oid=DIABETES_OID))
        result = service.link_measure(measure)
        assert result.composite_outcomes == {"M1-root": Linked("both")}
        assert service.get("both").usage.measure_ids == ["M1"]

    def test_operator_mismatch_not_matched(self, service):
        service.store.put(make_atomic("a", oid=COLONOSCOPY_OID, status="approved"))
        service.store.put(make_atomic("b", oid=DIABETES_OID, status="approved"))
        service.store.put(
            CompositeComponent(id="either", operator="OR", children=[ComponentReference("a"), ComponentReference("b")])
        )
        measure = make_measure("M1", make_element("e1", oid=COLONOSCOPY_OID), make_element("e2", oid=DIABETES_OID))
        assert service.link_measure(measure).composite_outcomes == {}

    def test_validate_measure_components(self, service):
        service.store.put(make_atomic("a", status="archived"))
        report = service.validate_measure_components(make_measure("M1", make_element("e1", component_id="a")))
        assert not report.is_valid


class TestLoadFromApi:
    """Test loading the remote catalogue"""

    def test_detail_failure_falls_back_to_summary(self, service, remote_client, library_config):
        remote_client.summaries = [{"id": "a", "name": "A"}, {"id": "b", "name": "B", "status": "APPROVED"}]
        remote_client.components = {"a": {"id": "a", "name": "A", "valueSetOid": COLONOSCOPY_OID}}

        result = service.load_from_api()

        assert result.success
        assert result.loaded == 2
        assert result.summary_fallbacks == ["b"]
        assert service.get("a").value_set.oid == COLONOSCOPY_OID
        assert service.get("b").status == "approved"
        restored = LibraryStateStore(library_config.persistence).load_components()
        assert sorted(c.id for c in restored) == ["a", "b"]

    def test_empty_listing_keeps_catalogue(self, service, remote_client):
        service.store.put(make_atomic("local"))
        result = service.load_from_api()
        assert result.success
        assert service.get("local") is not None

    def test_listing_failure(self, service, remote_client):
        service.store.put(make_atomic("local"))
        remote_client.fail_with = unavailable()
        result = service.load_from_api()
        assert not result.success
        assert service.api_error
        assert service.get("local") is not None
        assert not service.is_loading

    def test_concurrent_load_skipped(self, service, remote_client):
        service.is_loading = True
        assert service.load_from_api().error == "Load already in progress"
        assert remote_client.calls == []

    def test_without_client(self, library_config):
        assert not ComponentLibraryService(config=library_config).load_from_api().success


class TestSyncComponentToMeasures:
    """Test propagating component edits onto linked measure elements"""

    def test_rewrites_linked_elements(self, service, measures):
        service.store.put(make_atomic("a", oid=COLONOSCOPY_OID, measure_ids=["M1"]))
        measures.upsert(
            make_measure(
                "M1",
                make_element("e1", oid=COLONOSCOPY_OID, codes=[code("1")], component_id="a"),
                make_element("e2", oid=DIABETES_OID),
            )
        )
        result = service.sync_component_to_measures(
            "a", {"name": "Colonoscopy Screening", "negation": True, "codes": [code("1"), code("2")]}
        )
        assert result.success
        assert result.updated_ids == ["M1"]
        elements = elements_by_id(measures.get("M1"))
        assert elements["e1"].description == "Colonoscopy Screening"
        assert elements["e1"].negation
        assert [c.code for c in elements["e1"].value_set.codes] == ["1", "2"]
        assert elements["e2"].description == "e2"

    def test_missing_measure_rejects_batch(self, service, measures):
        service.store.put(make_atomic("a", measure_ids=["M1", "M9"]))
        measures.upsert(make_measure("M1", make_element("e1", oid=COLONOSCOPY_OID, component_id="a")))
        result = service.sync_component_to_measures("a", {"name": "Renamed"})
        assert not result.success
        assert "M9" in result.error
        assert elements_by_id(measures.get("M1"))["e1"].description == "e1"

    def test_unknown_component(self, service):
        assert not service.sync_component_to_measures("ghost", {}).success


class TestStatePersistence:
    def test_state_restored_by_new_service(self, service, remote_client, library_config):
        service.add_component(make_atomic("a", oid=COLONOSCOPY_OID))
        remote_client.fail_with = unavailable()
        service.add_component(make_atomic("b"))

        restored = ComponentLibraryService(
            config=library_config, state_store=LibraryStateStore(library_config.persistence)
        )
        assert restored.load_state() == 2
        assert restored.get("a").value_set.oid == COLONOSCOPY_OID
        assert restored.sync_queue.get("b").operation == "create"
