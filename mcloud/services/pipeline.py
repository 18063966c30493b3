from __future__ import annotations

from enum import Enum
from typing import Callable, Generic, List, Optional, Sequence, TypeVar


class BootstrapPhase(str, Enum):
    PREFLIGHT = "preflight"
    CREDENTIALS_GENERATED = "credentials_generated"
    COMPUTE_BOOTSTRAPPED = "compute_bootstrapped"
    NETWORK_BOOTSTRAPPED = "network_bootstrapped"
    STORAGE_BOOTSTRAPPED = "storage_bootstrapped"
    PERSISTED = "persisted"
    FINALIZED = "finalized"


class JoinPhase(str, Enum):
    UNJOINED = "unjoined"
    TOKEN_VALIDATED = "token_validated"
    CERTIFICATE_ISSUED = "certificate_issued"
    COMPUTE_JOINED = "compute_joined"
    STORAGE_JOINED = "storage_joined"
    NETWORK_JOINED = "network_joined"
    REGISTERED = "registered"
    ONLINE = "online"


class LeavePhase(str, Enum):
    ONLINE = "online"
    DRAINING = "draining"
    REMOVED_FROM_COMPUTE = "removed_from_compute"
    REMOVED_FROM_STORAGE = "removed_from_storage"
    REMOVED_FROM_NETWORK = "removed_from_network"
    REMOVED = "removed"


BOOTSTRAP_SEQUENCE: Sequence[BootstrapPhase] = tuple(BootstrapPhase)
JOIN_SEQUENCE: Sequence[JoinPhase] = tuple(JoinPhase)
LEAVE_SEQUENCE: Sequence[LeavePhase] = tuple(LeavePhase)

P = TypeVar("P", bound=Enum)

PhaseObserver = Callable[[Enum], None]


class PhaseTransitionError(RuntimeError):
    pass


class PhaseTracker(Generic[P]):
    """Forward-only walk through a phase sequence.

    The first phase is current on construction; :meth:`advance` only accepts
    the immediate successor, so no phase can be skipped or revisited.
    """

    def __init__(self, sequence: Sequence[P], observer: Optional[PhaseObserver] = None) -> None:
        if not sequence:
            raise ValueError("phase sequence must not be empty")
        self._sequence = list(sequence)
        self._index = 0
        self._observer = observer
        self.history: List[P] = [self._sequence[0]]

    @property
    def current(self) -> P:
        return self._sequence[self._index]

    @property
    def finished(self) -> bool:
        return self._index == len(self._sequence) - 1

    def advance(self, target: P) -> P:
        if self.finished:
            raise PhaseTransitionError(f"pipeline already reached {self.current.value}")
        expected = self._sequence[self._index + 1]
        if target != expected:
            raise PhaseTransitionError(
                f"cannot move from {self.current.value} to {target.value}; next phase is {expected.value}"
            )
        self._index += 1
        self.history.append(target)
        if self._observer is not None:
            self._observer(target)
        return target
