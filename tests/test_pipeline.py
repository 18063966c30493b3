from __future__ import annotations

from enum import Enum
from typing import List

import pytest

from mcloud.services.pipeline import (
    BOOTSTRAP_SEQUENCE,
    JOIN_SEQUENCE,
    LEAVE_SEQUENCE,
    BootstrapPhase,
    JoinPhase,
    LeavePhase,
    PhaseTracker,
    PhaseTransitionError,
)


def test_sequences_start_and_end_where_expected() -> None:
    assert BOOTSTRAP_SEQUENCE[0] is BootstrapPhase.PREFLIGHT
    assert BOOTSTRAP_SEQUENCE[-1] is BootstrapPhase.FINALIZED
    assert JOIN_SEQUENCE[0] is JoinPhase.UNJOINED
    assert JOIN_SEQUENCE[-1] is JoinPhase.ONLINE
    assert LEAVE_SEQUENCE[0] is LeavePhase.ONLINE
    assert LEAVE_SEQUENCE[-1] is LeavePhase.REMOVED


def test_tracker_only_moves_to_the_next_phase() -> None:
    seen: List[Enum] = []
    tracker: PhaseTracker[LeavePhase] = PhaseTracker(LEAVE_SEQUENCE, observer=seen.append)
    tracker.advance(LeavePhase.DRAINING)

    with pytest.raises(PhaseTransitionError):
        tracker.advance(LeavePhase.REMOVED_FROM_STORAGE)
    with pytest.raises(PhaseTransitionError):
        tracker.advance(LeavePhase.DRAINING)

    for phase in LEAVE_SEQUENCE[2:]:
        tracker.advance(phase)
    assert tracker.finished
    assert tracker.history == list(LEAVE_SEQUENCE)
    assert seen == list(LEAVE_SEQUENCE[1:])

    with pytest.raises(PhaseTransitionError):
        tracker.advance(LeavePhase.REMOVED)


def test_tracker_rejects_empty_sequence() -> None:
    with pytest.raises(ValueError):
        PhaseTracker([])
