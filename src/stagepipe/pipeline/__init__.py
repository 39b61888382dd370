"""Pipeline package for bulk writes and reads."""

from stagepipe.pipeline.factory import (
    PipeFactory,
    SessionPool,
    select_variants,
)
from stagepipe.pipeline.read import (
    ReadPipe,
    can_push_aggregates,
    distribute_row_groups,
)
from stagepipe.pipeline.write import WritePipe

__all__ = [
    "PipeFactory",
    "SessionPool",
    "select_variants",
    "ReadPipe",
    "can_push_aggregates",
    "distribute_row_groups",
    "WritePipe",
]
