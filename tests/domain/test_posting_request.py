"""Tests for posting DTOs (ledger_kernel/domain/dtos.py)."""

from datetime import date
from decimal import Decimal

import pytest

from ledger_kernel.domain.dtos import LegSpec, PostingRequest, enum_value
from ledger_kernel.exceptions import ValidationError
from ledger_kernel.models.journal import ReferenceType


def _payload_leg(**overrides):
    leg = {
        "account_id": 1,
        "currency_id": 1,
        "debit": Decimal("100"),
        "credit": Decimal("0"),
        "journal_date": "2024-01-15",
        "reference_type": "receipt",
        "reference_id": "RC-1",
        "notes": "cash in",
        "branch_id": 3,
    }
    leg.update(overrides)
    return leg


class TestFromPayload:
    """Voucher-screen dicts to PostingRequest."""

    def test_builds_request(self):
        request = PostingRequest.from_payload(
            [_payload_leg(), _payload_leg(account_id=2, debit=0, credit=Decimal("100"), notes=None)],
            created_by="clerk",
        )
        assert request.reference_type == "receipt"
        assert request.reference_id == "RC-1"
        assert request.journal_date == date(2024, 1, 15)
        assert request.branch_id == 3
        assert request.created_by == "clerk"
        assert [leg.account_id for leg in request.legs] == [1, 2]
        assert request.legs[0].notes == "cash in"

    def test_missing_debit_treated_as_zero(self):
        request = PostingRequest.from_payload(
            [_payload_leg(), _payload_leg(account_id=2, debit=None, credit=Decimal("100"))]
        )
        assert request.legs[1].debit == Decimal("0")

    def test_empty_payload(self):
        with pytest.raises(ValidationError):
            PostingRequest.from_payload([])

    def test_missing_account(self):
        with pytest.raises(ValidationError) as exc_info:
            PostingRequest.from_payload([_payload_leg(), _payload_leg(account_id=None)])
        assert exc_info.value.field == "account_id"

    def test_legs_must_share_reference(self):
        with pytest.raises(ValidationError) as exc_info:
            PostingRequest.from_payload([_payload_leg(), _payload_leg(reference_id="RC-2")])
        assert exc_info.value.field == "reference_id"

    def test_legs_must_share_branch(self):
        with pytest.raises(ValidationError):
            PostingRequest.from_payload([_payload_leg(), _payload_leg(branch_id=4)])

    def test_bad_date(self):
        with pytest.raises(ValidationError):
            PostingRequest.from_payload([_payload_leg(journal_date="15/01/2024")] * 2)


class TestLegSpec:

    def test_debit_and_credit_helpers(self):
        debit = LegSpec.debit_leg(1, 2, "10.50")
        credit = LegSpec.credit_leg(3, 2, 5)
        assert (debit.debit, debit.credit) == (Decimal("10.50"), Decimal("0"))
        assert (credit.debit, credit.credit) == (Decimal("0"), Decimal("5"))

    def test_mirrored_swaps_sides(self):
        leg = LegSpec.debit_leg(1, 2, "10", exchange_rate=Decimal("250"))
        mirrored = leg.mirrored()
        assert (mirrored.debit, mirrored.credit) == (Decimal("0"), Decimal("10"))
        assert mirrored.exchange_rate == Decimal("250")


def test_enum_value():
    assert enum_value(ReferenceType.ORDER) == "order"
    assert enum_value("order") == "order"
    assert enum_value(None) is None
