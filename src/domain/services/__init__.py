"""Domain Services.

This package contains domain services that implement business logic
without infrastructure dependencies: the field diff engine, the summary
renderer, the optimistic concurrency controller, field validators and the
update orchestrator that ties them together.

The orchestrator is imported from its module directly
(src.domain.services.update_orchestrator) since it depends on the entity
definitions, which in turn depend on the validators in this package.
"""

from src.domain.services.field_diff import build_field_diff, normalize_for_compare, values_equal
from src.domain.services.summary_renderer import resolve_summary, summarize
from src.domain.services.concurrency import check_version, next_version_stamp

__all__ = [
    'build_field_diff',
    'normalize_for_compare',
    'values_equal',
    'summarize',
    'resolve_summary',
    'check_version',
    'next_version_stamp',
]
