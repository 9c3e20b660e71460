"""Tests for ledger pydantic models."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from epochledger.ledger.models import (
    Allocation,
    Epoch,
    EpochStatus,
    PayoutLine,
    PayoutStatement,
    PoolComponentInput,
    WeightPolicy,
)


class TestWeightPolicy:

    def test_unknown_category_weighs_zero(self):
        policy = WeightPolicy(version="v1", weights={"pr_merged": 1000})
        assert policy.weight_for("pr_merged") == 1000
        assert policy.weight_for("emoji_reaction") == 0

    def test_negative_weight_rejected(self):
        with pytest.raises(ValidationError, match="must be >= 0"):
            WeightPolicy(version="v1", weights={"spam": -1})

    def test_float_weight_rejected(self):
        with pytest.raises(ValidationError):
            WeightPolicy(version="v1", weights={"pr_merged": 1.5})

    def test_frozen(self):
        policy = WeightPolicy(version="v1", weights={})
        with pytest.raises(ValidationError):
            policy.version = "v2"

    def test_round_trips_through_json(self):
        policy = WeightPolicy(version="v3", weights={"a": 1, "b": 2})
        assert WeightPolicy.model_validate(policy.model_dump(mode="json")) == policy


class TestNewActivityFact:

    def test_naive_timestamp_rejected(self, make_fact):
        with pytest.raises(ValidationError, match="timezone-aware"):
            make_fact(1, event_time=datetime(2026, 1, 2))

    def test_timestamps_normalized_to_utc(self, make_fact):
        plus_two = timezone(timedelta(hours=2))
        fact = make_fact(1, event_time=datetime(2026, 1, 2, 12, tzinfo=plus_two))
        assert fact.event_time == datetime(2026, 1, 2, 10, tzinfo=timezone.utc)
        assert fact.event_time.utcoffset() == timedelta(0)

    def test_payload_hash_must_be_hex_sha256(self, make_fact):
        with pytest.raises(ValidationError):
            make_fact(1, payload_hash="not-a-hash")

    def test_empty_provenance_rejected(self, make_fact):
        with pytest.raises(ValidationError):
            make_fact(1, producer="")


class TestEpoch:

    def _epoch(self, policy) -> Epoch:
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        return Epoch(
            id=1,
            scope_id="s",
            status=EpochStatus.OPEN,
            period_start=start,
            period_end=start + timedelta(days=7),
            weight_policy=policy,
            opened_at=start,
        )

    def test_window_is_half_open(self, policy):
        epoch = self._epoch(policy)
        assert epoch.contains(epoch.period_start)
        assert epoch.contains(epoch.period_end - timedelta(microseconds=1))
        assert not epoch.contains(epoch.period_end)
        assert not epoch.contains(epoch.period_start - timedelta(seconds=1))

    def test_is_open(self, policy):
        epoch = self._epoch(policy)
        assert epoch.is_open
        assert not epoch.model_copy(update={"status": EpochStatus.CLOSED}).is_open


class TestAllocationAndStatement:

    def test_final_units_override_proposed(self):
        alloc = Allocation(scope_id="s", epoch_id=1, subject_id="a", proposed_units=500)
        assert alloc.effective_units == 500
        assert alloc.model_copy(update={"final_units": 0}).effective_units == 0
        assert alloc.model_copy(update={"final_units": 900}).effective_units == 900

    def test_statement_total_paid(self):
        stmt = PayoutStatement(
            id="x",
            scope_id="s",
            epoch_id=1,
            allocation_set_hash="0" * 64,
            pool_total_credits=10,
            payouts=[
                PayoutLine(subject_id="a", total_units=1, share="0.500000", amount_credits=5),
                PayoutLine(subject_id="b", total_units=1, share="0.500000", amount_credits=5),
            ],
            created_at=datetime(2026, 1, 8, tzinfo=timezone.utc),
        )
        assert stmt.total_paid == 10

    def test_pool_component_amount_must_be_non_negative_int(self):
        with pytest.raises(ValidationError):
            PoolComponentInput(component_type="t", algorithm_version="v", amount_credits=-1)
        with pytest.raises(ValidationError):
            PoolComponentInput(component_type="t", algorithm_version="v", amount_credits=1.5)
