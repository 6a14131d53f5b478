"""
Append-only ledger tests.

Verifies that posted headers and legs cannot be changed or removed through
the ORM, and that the blocked attempt is logged.
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from ledger_kernel.exceptions import ImmutabilityViolationError
from ledger_kernel.models.account import Account
from ledger_kernel.models.journal import JournalEntry, JournalPosting


@pytest.fixture
def posted(session, journal_ledger, make_transfer, standard_accounts, standard_currencies):
    result = journal_ledger.post_request(
        make_transfer(
            "J-1", standard_accounts["cash"], standard_accounts["sales"], standard_currencies["LCL"], "100"
        )
    )
    return result


class TestJournalEntryImmutability:

    def test_amount_change_rejected(self, session, posted):
        entry = session.get(JournalEntry, posted.leg_ids[0])
        entry.debit = Decimal("1000")
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert exc_info.value.entity_type == "JournalEntry"
        assert "debit" in exc_info.value.reason

    def test_notes_change_rejected(self, session, posted):
        entry = session.get(JournalEntry, posted.leg_ids[1])
        entry.notes = "edited later"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_delete_rejected(self, session, posted):
        session.delete(session.get(JournalEntry, posted.leg_ids[0]))
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_blocked_attempt_logged(self, session, posted, captured_logs):
        entry = session.get(JournalEntry, posted.leg_ids[0])
        entry.credit = Decimal("5")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        blocked = [r for r in captured_logs() if r["message"] == "immutability_violation_blocked"]
        assert blocked[0]["entity_type"] == "JournalEntry"
        assert blocked[0]["operation"] == "UPDATE"


class TestJournalPostingImmutability:

    def test_header_change_rejected(self, session, posted):
        posting = session.get(JournalPosting, posted.posting_id)
        posting.reference_id = "J-2"
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert exc_info.value.entity_type == "JournalPosting"

    def test_header_delete_rejected(self, session, posted):
        session.delete(session.get(JournalPosting, posted.posting_id))
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestMutableReferenceData:

    def test_accounts_stay_editable(self, session, chart, posted, standard_accounts):
        chart.rename_account(standard_accounts["cash"], "Main cash box")
        name = session.execute(
            select(Account.name).where(Account.id == standard_accounts["cash"])
        ).scalar_one()
        assert name == "Main cash box"
