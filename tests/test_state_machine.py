"""
Tests for the voucher workflow state machine
"""

import pytest

from approval_engine.state_machine import (
    VoucherStatus, WORKFLOW_TRANSITIONS, TERMINAL_STATUSES,
    is_valid_transition, allowed_transitions, is_terminal,
)


LEGAL = {
    ("draft", "pending_verification"),
    ("pending_verification", "verified"),
    ("pending_verification", "pending_approval"),
    ("pending_verification", "rejected"),
    ("verified", "pending_approval"),
    ("verified", "completed"),
    ("pending_approval", "approved"),
    ("pending_approval", "rejected"),
}


class TestTransitions:
    """Test the transition table"""

    def test_every_pair_matches_table(self):
        """Test that exactly the listed edges are legal"""
        for source in VoucherStatus:
            for target in VoucherStatus:
                expected = (source.value, target.value) in LEGAL
                assert is_valid_transition(source, target) == expected, (source, target)

    def test_string_statuses_accepted(self):
        assert is_valid_transition("pending_approval", "approved")
        assert not is_valid_transition("approved", "pending_approval")

    def test_unknown_status_is_never_valid(self):
        assert not is_valid_transition("archived", "approved")
        assert not is_valid_transition("pending_approval", "archived")
        assert allowed_transitions("archived") == frozenset()

    def test_no_self_transitions(self):
        for status in VoucherStatus:
            assert not is_valid_transition(status, status)

    @pytest.mark.parametrize("status", ["approved", "rejected", "completed"])
    def test_terminal_statuses_have_no_exits(self, status):
        assert is_terminal(status)
        assert allowed_transitions(status) == frozenset()

    def test_non_terminal_statuses(self):
        for status in VoucherStatus:
            if status not in TERMINAL_STATUSES:
                assert not is_terminal(status)
                assert allowed_transitions(status)

    def test_table_is_read_only(self):
        with pytest.raises(TypeError):
            WORKFLOW_TRANSITIONS[VoucherStatus.APPROVED] = frozenset({VoucherStatus.DRAFT})
