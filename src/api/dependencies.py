"""Shared FastAPI dependencies.

The control plane is built once in the application lifespan and stored on
``app.state``; routes receive it through ``get_control_plane``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

if TYPE_CHECKING:  # pragma: no cover
    from control.plane import ControlPlane


def get_control_plane(request: Request) -> ControlPlane:
    return request.app.state.control_plane
