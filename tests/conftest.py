"""Pytest configuration and fixtures for Measure Library tests"""
import pytest

from measure_library.core.config import LibraryConfig, PersistenceConfig
from measure_library.core.exceptions import RemoteStoreError
from measure_library.library.models import (
    AtomicComponent,
    ComponentMetadata,
    UsageInfo,
    VersionInfo,
    VersionRecord,
)
from measure_library.library.persistence import LibraryStateStore
from measure_library.library.service import ComponentLibraryService
from measure_library.measures.collection import MeasureCollection
from measure_library.measures.models import (
    ClinicalCode,
    DataElement,
    LogicalClause,
    Measure,
    Population,
    ValueSet,
)


COLONOSCOPY_OID = "2.16.840.1.113883.3.464.1003.108.12.1020"
DIABETES_OID = "2.16.840.1.113883.3.464.1003.103.12.1001"


def code(value, system="CPT", display=None):
    return ClinicalCode(code=value, system=system, display=display)


def make_atomic(
    component_id,
    name=None,
    oid=None,
    codes=None,
    status="draft",
    measure_ids=None,
    timing=None,
    negation=False,
    category="clinical-observations",
    value_set_name=None,
):
    """Build an atomic component with sensible defaults."""
    return AtomicComponent(
        id=component_id,
        name=name or component_id,
        value_set=ValueSet(oid=oid, name=value_set_name or name or component_id, codes=list(codes or [])),
        timing=timing,
        negation=negation,
        version_info=VersionInfo(
            status=status,
            history=[VersionRecord(version_id="1.0", status=status, change_description="Initial version")],
        ),
        usage=UsageInfo(measure_ids=sorted(measure_ids or [])),
        metadata=ComponentMetadata(category=category),
    )


def make_element(element_id, oid=None, codes=None, name=None, component_id=None, element_type="procedure", **kwargs):
    value_set = None
    if oid is not None or codes is not None or name is not None:
        value_set = ValueSet(oid=oid, name=name, codes=list(codes or []))
    return DataElement(
        id=element_id,
        type=element_type,
        description=kwargs.pop("description", name or element_id),
        value_set=value_set,
        library_component_id=component_id,
        **kwargs,
    )


def make_measure(measure_id, *elements, operator="AND"):
    criteria = LogicalClause(id=f"{measure_id}-root", operator=operator, children=list(elements))
    return Measure(
        id=measure_id,
        title=f"Measure {measure_id}",
        populations=[Population(id=f"{measure_id}-num", type="numerator", criteria=criteria)],
    )


class FakeRemoteClient:
    """In-memory stand-in for RemoteComponentClient that records every call."""

    def __init__(self):
        self.calls = []
        self.fail_with = None
        self.components = {}
        self.summaries = []
        self.circuit_breaker = None
        self.closed = False

    def _record(self, name, *args):
        self.calls.append((name, *args))
        if self.fail_with is not None:
            raise self.fail_with

    def list_component_summaries(self, params=None):
        self._record("list_component_summaries")
        return list(self.summaries)

    def get_component(self, component_id):
        self._record("get_component", component_id)
        if component_id not in self.components:
            raise RemoteStoreError("Remote store rejected request", status_code=404, operation="getComponent")
        return self.components[component_id]

    def create_atomic_component(self, dto):
        self._record("create_atomic_component", dto["id"])

    def create_composite_component(self, dto):
        self._record("create_composite_component", dto["id"])

    def update_component(self, component_id, dto):
        self._record("update_component", component_id)

    def delete_component(self, component_id):
        self._record("delete_component", component_id)

    def archive_component(self, component_id, superseded_by=None):
        self._record("archive_component", component_id)

    def approve_component(self, component_id, approved_by):
        self._record("approve_component", component_id)

    def record_usage(self, component_id, measure_id):
        self._record("record_usage", component_id, measure_id)

    def close(self):
        self.closed = True

    def call_names(self):
        return [c[0] for c in self.calls]


class FakeClock:
    """Controllable epoch clock for sync backoff tests."""

    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def remote_client():
    return FakeRemoteClient()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def library_config(tmp_path):
    """Configuration with inline sync and state under tmp_path"""
    config = LibraryConfig()
    config.sync.background = False
    config.persistence = PersistenceConfig(state_dir=tmp_path / "state")
    return config


@pytest.fixture
def measures():
    return MeasureCollection()


@pytest.fixture
def service(library_config, remote_client, measures, clock):
    """Service wired to the fake remote store and a tmp_path state file"""
    svc = ComponentLibraryService(
        config=library_config,
        client=remote_client,
        measures=measures,
        state_store=LibraryStateStore(library_config.persistence),
        clock=clock,
    )
    yield svc
    svc.close()
