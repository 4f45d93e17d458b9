import pytest

from app.models.patient import PatientStatus
from app.services.patient_status import (
    InvalidStatusTransition,
    can_transition,
    coerce_status,
)

S = PatientStatus


@pytest.mark.parametrize(
    "current, target, allowed",
    [
        (S.pending, S.qualified, True),
        (S.pending, S.rejected, True),
        (S.pending, S.active, False),
        (S.qualified, S.active, True),
        (S.qualified, S.pending, False),
        (S.active, S.inactive, True),
        (S.active, S.qualified, False),
        (S.inactive, S.active, True),
        (S.inactive, S.qualified, True),
        (S.rejected, S.pending, True),
        (S.rejected, S.qualified, False),
        (S.archived, S.pending, False),
        (S.archived, S.archived, True),
        (S.active, S.active, True),
    ],
)
def test_transition_table(current, target, allowed):
    assert can_transition(current, target) is allowed


@pytest.mark.parametrize("status", list(S))
def test_every_status_can_be_archived(status):
    assert can_transition(status, S.archived)


def test_coerce_status_reads_legacy_client_as_qualified():
    assert coerce_status("client") == S.qualified
    assert coerce_status(" Active ") == S.active
    assert coerce_status(S.rejected) == S.rejected


def test_coerce_status_rejects_unknown_values():
    with pytest.raises(ValueError):
        coerce_status("vip")


def test_invalid_transition_message():
    exc = InvalidStatusTransition(S.archived, S.active)
    assert str(exc) == "Invalid status transition: archived -> active"
    assert exc.current == S.archived
    assert exc.target == S.active
