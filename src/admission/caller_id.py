from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import phonenumbers

from admission.results import ValidationOutcome, ValidationResult
from control.errors import AdmissionCheckFailedError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Tenant:
    id: int
    name: str = ""
    default_region: str = "US"
    verify_caller_id: bool = True


class NumberSource(Protocol):
    async def is_blocked(self, workspace_id: int, number: str, *, timeout: float | None = None) -> bool: ...

    async def owns_number(self, workspace_id: int, number: str, *, timeout: float | None = None) -> bool: ...


def normalize_number(raw: str, region: str | None) -> str:
    """Normalize a phone number to E.164.

    Raises:
        ValueError: if the number cannot be parsed or is not a possible number.
    """

    number = (raw or "").strip()
    if not number:
        raise ValueError("Phone number is required.")
    try:
        parsed = phonenumbers.parse(number, region)
    except phonenumbers.NumberParseException as exc:
        raise ValueError(f"Invalid phone number '{number}': {exc}") from exc
    if not phonenumbers.is_possible_number(parsed):
        raise ValueError(f"Impossible phone number '{number}'")
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


class CallerIdentityValidator:
    """Normalize a caller number and apply the tenant's number policy.

    Order matters: normalization, then blocklist, then caller-ID ownership. A
    blocklisted number is blocked even when the tenant owns it.
    """

    def __init__(
        self,
        numbers: NumberSource,
        *,
        verify_caller_id: bool = True,
        timeout: float | None = None,
    ) -> None:
        self._numbers = numbers
        self._verify_caller_id = verify_caller_id
        self._timeout = timeout

    async def validate(
        self,
        raw_number: str,
        tenant: Tenant,
        *,
        check_ownership: bool = True,
        timeout: float | None = None,
    ) -> ValidationResult:
        deadline = timeout if timeout is not None else self._timeout
        try:
            canonical = normalize_number(raw_number, tenant.default_region)
        except ValueError as exc:
            LOGGER.warning("Caller number rejected for workspace %s: %s", tenant.id, exc)
            return ValidationResult(ValidationOutcome.CHECK_FAILED, reason=str(exc))

        try:
            if await self._numbers.is_blocked(tenant.id, canonical, timeout=deadline):
                LOGGER.info("Caller %s is blocklisted in workspace %s", canonical, tenant.id)
                return ValidationResult(ValidationOutcome.BLOCKED, canonical, reason="blocklisted")

            if check_ownership and self._verify_caller_id and tenant.verify_caller_id:
                if not await self._numbers.owns_number(tenant.id, canonical, timeout=deadline):
                    LOGGER.info("Caller ID %s is not owned by workspace %s", canonical, tenant.id)
                    return ValidationResult(ValidationOutcome.BLOCKED, canonical, reason="caller-id-not-owned")
        except AdmissionCheckFailedError as exc:
            LOGGER.error("Caller validation for workspace %s failed: %s", tenant.id, exc.detail)
            return ValidationResult(ValidationOutcome.CHECK_FAILED, canonical, reason=exc.detail)

        return ValidationResult(ValidationOutcome.VALID, canonical)
