"""Execution outcomes."""
from dataclasses import dataclass
from typing import Optional

from .models import OutcomeKind


@dataclass(frozen=True)
class Outcome:
    """Classified result of one call to the provisioning API."""
    kind: OutcomeKind
    detail: Optional[str] = None
    status_code: Optional[int] = None

    @classmethod
    def success(cls, status_code: Optional[int] = None) -> "Outcome":
        return cls(OutcomeKind.SUCCESS, status_code=status_code)

    @classmethod
    def transient(cls, detail: str, status_code: Optional[int] = None) -> "Outcome":
        return cls(OutcomeKind.TRANSIENT_FAILURE, detail, status_code)

    @classmethod
    def permanent(cls, detail: str, status_code: Optional[int] = None) -> "Outcome":
        return cls(OutcomeKind.PERMANENT_FAILURE, detail, status_code)

    @property
    def succeeded(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS
