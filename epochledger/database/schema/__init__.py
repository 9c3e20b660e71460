from .base import Base, UTCDateTime
from .guards import install_guards
from .ledger import (
    ActivityFactRow,
    AllocationRow,
    CurationRow,
    EpochRow,
    IdentityBindingRow,
    PayoutStatementRow,
    PoolComponentRow,
    SourceCursorRow,
)

install_guards()

__all__ = [
    "ActivityFactRow",
    "AllocationRow",
    "Base",
    "CurationRow",
    "EpochRow",
    "IdentityBindingRow",
    "PayoutStatementRow",
    "PoolComponentRow",
    "SourceCursorRow",
    "UTCDateTime",
]
