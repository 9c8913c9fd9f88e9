"""Domain models for the FSA payment archive pipeline."""

from .config_models import (
    FetchConfig,
    MappingTable,
    PipelineConfig,
    SourceEntry,
    StateInfo,
    YearLayout,
)
from .error_record import ErrorRecord
from .payment_record import CANONICAL_COLUMNS, PARTITION_COLUMNS, PaymentRecord
from .processing_result import ProcessingResult, YearStat
from .source_file import SourceFile, SourceFormat, YearStatus

__all__ = [
    # Configuration models
    "FetchConfig",
    "MappingTable",
    "PipelineConfig",
    "SourceEntry",
    "StateInfo",
    "YearLayout",
    # Processing models
    "CANONICAL_COLUMNS",
    "ErrorRecord",
    "PARTITION_COLUMNS",
    "PaymentRecord",
    "ProcessingResult",
    "SourceFile",
    "SourceFormat",
    "YearStat",
    "YearStatus",
]
