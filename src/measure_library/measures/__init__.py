"""Measures module - measure documents and the measure collection.

Provides:
- Measure, population and criteria tree models
- Tree walkers used by linking and the usage index
- MeasureCollection with validated batch updates
"""

from measure_library.measures.models import (
    ClinicalCode,
    ValueSet,
    DataElement,
    LogicalClause,
    Population,
    Measure,
    is_unlinkable_marker,
    iter_data_elements,
    iter_measure_elements,
    iter_composite_candidates,
    collect_linked_elements,
    map_measure_elements,
)

from measure_library.measures.collection import (
    BatchUpdateResult,
    MeasureCollection,
    load_measures,
    save_measures,
)

__all__ = [
    # Models
    'ClinicalCode',
    'ValueSet',
    'DataElement',
    'LogicalClause',
    'Population',
    'Measure',
    # Tree helpers
    'is_unlinkable_marker',
    'iter_data_elements',
    'iter_measure_elements',
    'iter_composite_candidates',
    'collect_linked_elements',
    'map_measure_elements',
    # Collection
    'BatchUpdateResult',
    'MeasureCollection',
    'load_measures',
    'save_measures',
]
