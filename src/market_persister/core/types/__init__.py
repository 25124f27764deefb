from market_persister.core.types._pipeline_types import (
    UNKNOWN_DATA_TYPE,
    Counter,
    DataType,
    DeliveryState,
    Disposition,
    Outcome,
    Segment,
)

__all__ = [
    "UNKNOWN_DATA_TYPE",
    "Counter",
    "DataType",
    "DeliveryState",
    "Disposition",
    "Outcome",
    "Segment",
]
