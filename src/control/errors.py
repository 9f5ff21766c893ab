"""Infrastructure faults raised by the control plane.

Policy outcomes (denied, blocked, no candidate) are never exceptions; they are
returned as decision values. These exceptions are safe to import from API layers.
"""

from __future__ import annotations


class ControlPlaneError(Exception):
    status_code: int = 500
    default_detail: str = "Control plane error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class RegistryUnavailableError(ControlPlaneError):
    status_code = 503
    default_detail = "Node registry unavailable."


class AdmissionCheckFailedError(ControlPlaneError):
    status_code = 503
    default_detail = "Admission check could not be evaluated."


class UnknownTenantError(ControlPlaneError):
    status_code = 404
    default_detail = "Unknown workspace."


class UnknownNodeError(ControlPlaneError):
    status_code = 404
    default_detail = "Node is not registered."
