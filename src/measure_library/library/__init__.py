"""Library module - the component catalogue and its consistency engine.

Provides:
- Component, usage, version and sync-queue models
- Remote DTO transformers
- The component store with the safe-replace guard
- Structural matching, category inference and the usage index
- Pending sync bookkeeping, merge and referential integrity checks
- Local persistence and the ComponentLibraryService facade
"""

from measure_library.library.models import (
    VersionRecord,
    VersionInfo,
    UsageInfo,
    ComponentMetadata,
    AtomicComponent,
    ComponentReference,
    CompositeComponent,
    LibraryComponent,
    component_from_dict,
    SyncState,
    PendingSyncEntry,
    Linked,
    Unlinkable,
    Skipped,
    LinkOutcome,
    LinkResult,
    OperationResult,
    MergeResult,
)

from measure_library.library.transformers import (
    map_category,
    map_approval_status,
    component_from_summary,
    component_from_dto,
    component_to_dto,
)

from measure_library.library.store import ComponentStore

from measure_library.library.matcher import (
    AtomicFragment,
    CompositeFragment,
    MatchResult,
    Matcher,
)

from measure_library.library.categories import (
    category_for_element_type,
    infer_category,
)

from measure_library.library.usage import (
    UsageRebuildResult,
    UsageIndex,
)

from measure_library.library.sync import (
    RetrySummary,
    SyncQueue,
    SyncDispatcher,
    push_component,
)

from measure_library.library.integrity import (
    ReferenceViolation,
    MeasureValidationReport,
    validate_measure,
    find_reference_violations,
)

from measure_library.library.merge import MergeEngine

from measure_library.library.persistence import LibraryStateStore

from measure_library.library.service import (
    LoadResult,
    ComponentLibraryService,
)

__all__ = [
    # Models
    'VersionRecord',
    'VersionInfo',
    'UsageInfo',
    'ComponentMetadata',
    'AtomicComponent',
    'ComponentReference',
    'CompositeComponent',
    'LibraryComponent',
    'component_from_dict',
    'SyncState',
    'PendingSyncEntry',
    'Linked',
    'Unlinkable',
    'Skipped',
    'LinkOutcome',
    'LinkResult',
    'OperationResult',
    'MergeResult',
    # Transformers
    'map_category',
    'map_approval_status',
    'component_from_summary',
    'component_from_dto',
    'component_to_dto',
    # Store and matching
    'ComponentStore',
    'AtomicFragment',
    'CompositeFragment',
    'MatchResult',
    'Matcher',
    'category_for_element_type',
    'infer_category',
    # Usage
    'UsageRebuildResult',
    'UsageIndex',
    # Sync
    'RetrySummary',
    'SyncQueue',
    'SyncDispatcher',
    'push_component',
    # Integrity and merge
    'ReferenceViolation',
    'MeasureValidationReport',
    'validate_measure',
    'find_reference_violations',
    'MergeEngine',
    # Persistence and service
    'LibraryStateStore',
    'LoadResult',
    'ComponentLibraryService',
]
