"""Explicit decision values for admission checks.

A rule saying "no" (denied, blocked) is never conflated with a rule that could
not be evaluated (check failed).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AdmissionOutcome(str, Enum):
    AUTHORIZED = "authorized"
    DENIED = "denied"
    CHECK_FAILED = "check-failed"


class ValidationOutcome(str, Enum):
    VALID = "valid"
    BLOCKED = "blocked"
    CHECK_FAILED = "check-failed"


class CarrierRegistry(str, Enum):
    SIP_PROVIDER = "sip-provider"
    BYO_CARRIER = "byo-carrier"


@dataclass(frozen=True, slots=True)
class AdmissionResult:
    outcome: AdmissionOutcome
    registry: CarrierRegistry | None = None
    network: str | None = None
    did: str | None = None
    detail: str | None = None

    @property
    def authorized(self) -> bool:
        return self.outcome is AdmissionOutcome.AUTHORIZED


@dataclass(frozen=True, slots=True)
class ValidationResult:
    outcome: ValidationOutcome
    canonical_number: str | None = None
    reason: str | None = None

    @property
    def valid(self) -> bool:
        return self.outcome is ValidationOutcome.VALID
