"""Parsed DevWorkspace status and phase classification"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

READY_PHASES = frozenset({'Ready', 'Running'})
FAILURE_PHASES = frozenset({'Failed', 'Failing', 'Error'})


class Phase(Enum):
    READY = 'ready'
    FAILED = 'failed'
    PENDING = 'pending'


class MalformedStatusError(ValueError):
    """Raised when an API body cannot be read as a resource object"""


def classify_phase(phase: Optional[str]) -> Phase:
    """Map a raw status phase onto ready / failed / pending"""
    if phase in READY_PHASES:
        return Phase.READY
    if phase in FAILURE_PHASES:
        return Phase.FAILED
    return Phase.PENDING


@dataclass
class ResourceStatus:
    """Observed state of a DevWorkspace; every field may be missing"""
    name: Optional[str] = None
    phase: Optional[str] = None
    deletion_timestamp: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def from_body(cls, body: Any) -> 'ResourceStatus':
        # The kubernetes client hands back the raw string when JSON decoding fails
        if not isinstance(body, dict):
            raise MalformedStatusError(f"Unexpected DevWorkspace body: {str(body)[:200]!r}")
        metadata = body.get('metadata') or {}
        status = body.get('status') or {}
        if not isinstance(metadata, dict) or not isinstance(status, dict):
            raise MalformedStatusError(f"Unexpected DevWorkspace body: {str(body)[:200]!r}")
        return cls(
            name=metadata.get('name'),
            phase=status.get('phase'),
            deletion_timestamp=metadata.get('deletionTimestamp'),
            message=status.get('message'),
        )

    @property
    def classification(self) -> Phase:
        return classify_phase(self.phase)

    @property
    def terminating(self) -> bool:
        return self.deletion_timestamp is not None
