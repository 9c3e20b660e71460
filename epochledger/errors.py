"""Typed failures raised by the ledger core.

The orchestration layer retries on some of these and gives up on others,
so every class carries a stable ``code`` and nothing is ever collapsed
into a generic error. Verification mismatches are reports, not errors.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for every ledger failure."""

    code = "ledger_error"


# ---------------------------------------------------------------------------
# (a) Constraint violations
# ---------------------------------------------------------------------------


class ConstraintViolationError(LedgerError):
    code = "constraint_violation"


class DuplicatePoolComponentError(ConstraintViolationError):
    code = "duplicate_pool_component"

    def __init__(self, epoch_id: int, component_type: str):
        self.epoch_id = epoch_id
        self.component_type = component_type
        super().__init__(
            f"epoch {epoch_id} already has a '{component_type}' pool component"
        )


class OpenEpochExistsError(ConstraintViolationError):
    code = "open_epoch_exists"

    def __init__(self, scope_id: str, open_epoch_id: int | None = None):
        self.scope_id = scope_id
        self.open_epoch_id = open_epoch_id
        super().__init__(
            f"scope '{scope_id}' already has an open epoch"
            + (f" ({open_epoch_id})" if open_epoch_id is not None else "")
        )


class IdentityConflictError(ConstraintViolationError):
    code = "identity_conflict"

    def __init__(self, provider: str, external_id: str, bound_to: str):
        self.provider = provider
        self.external_id = external_id
        self.bound_to = bound_to
        super().__init__(
            f"{provider}:{external_id} is already bound to subject '{bound_to}'"
        )


# ---------------------------------------------------------------------------
# (b) Invariant violations
# ---------------------------------------------------------------------------


class InvariantViolationError(LedgerError):
    code = "invariant_violation"


class EpochClosedError(InvariantViolationError):
    code = "epoch_closed"

    def __init__(self, epoch_id: int | None = None, table: str | None = None):
        self.epoch_id = epoch_id
        self.table = table
        target = f"epoch {epoch_id}" if epoch_id is not None else "a closed epoch"
        where = f" ({table})" if table else ""
        super().__init__(f"write rejected: {target} is closed{where}")


class ImmutableRecordError(InvariantViolationError):
    code = "immutable_record"

    def __init__(self, table: str):
        self.table = table
        super().__init__(f"rows in '{table}' are immutable")


# ---------------------------------------------------------------------------
# (c) Precondition failures
# ---------------------------------------------------------------------------


class PreconditionFailedError(LedgerError):
    code = "precondition_failed"


class EpochNotFoundError(PreconditionFailedError):
    code = "epoch_not_found"

    def __init__(self, epoch_id: int):
        self.epoch_id = epoch_id
        super().__init__(f"epoch {epoch_id} does not exist")


class FactNotFoundError(PreconditionFailedError):
    code = "fact_not_found"

    def __init__(self, fact_id: str):
        self.fact_id = fact_id
        super().__init__(f"fact '{fact_id}' does not exist")


class FactOutsideWindowError(PreconditionFailedError):
    code = "fact_outside_window"

    def __init__(self, fact_id: str, epoch_id: int):
        self.fact_id = fact_id
        self.epoch_id = epoch_id
        super().__init__(f"fact '{fact_id}' is outside the period of epoch {epoch_id}")


class AllocationNotFoundError(PreconditionFailedError):
    code = "allocation_not_found"

    def __init__(self, epoch_id: int, subject_id: str):
        self.epoch_id = epoch_id
        self.subject_id = subject_id
        super().__init__(f"no allocation for subject '{subject_id}' in epoch {epoch_id}")


class MissingBaseIssuanceError(PreconditionFailedError):
    code = "missing_base_issuance"

    def __init__(self, epoch_id: int):
        self.epoch_id = epoch_id
        super().__init__(
            f"cannot close epoch {epoch_id}: no base_issuance pool component recorded"
        )


class StatementNotFoundError(PreconditionFailedError):
    code = "statement_not_found"

    def __init__(self, epoch_id: int):
        self.epoch_id = epoch_id
        super().__init__(f"epoch {epoch_id} has no payout statement")


class EpochNotClosedError(PreconditionFailedError):
    code = "epoch_not_closed"

    def __init__(self, epoch_id: int):
        self.epoch_id = epoch_id
        super().__init__(f"epoch {epoch_id} is still open")


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class MalformedFactError(LedgerError):
    code = "malformed_fact"

    def __init__(self, reason: str, fact_id: str | None = None):
        self.reason = reason
        self.fact_id = fact_id
        super().__init__(
            f"malformed fact{f' {fact_id!r}' if fact_id else ''}: {reason}"
        )


__all__ = [
    "AllocationNotFoundError",
    "ConstraintViolationError",
    "DuplicatePoolComponentError",
    "EpochClosedError",
    "EpochNotClosedError",
    "EpochNotFoundError",
    "FactNotFoundError",
    "FactOutsideWindowError",
    "IdentityConflictError",
    "ImmutableRecordError",
    "InvariantViolationError",
    "LedgerError",
    "MalformedFactError",
    "MissingBaseIssuanceError",
    "OpenEpochExistsError",
    "PreconditionFailedError",
    "StatementNotFoundError",
]
