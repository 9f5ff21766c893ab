"""FastAPI routes exposing placement, admission and the fleet push endpoint."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Path

from api.dependencies import get_control_plane
from api.schemas import (
    AuthorizeRequest,
    AuthorizeResponse,
    CallDecisionResponse,
    ConstraintsRequest,
    InboundCallRequest,
    MemberResponse,
    NodeReportRequest,
    NodeReportResponse,
    NodeResponse,
    OutboundCallRequest,
    PlacementResponse,
    ValidateRequest,
    ValidateResponse,
)
from control.errors import ControlPlaneError
from control.plane import CallDecision, ControlPlane
from fleet.nodes import NoCandidateAvailable, NodeKind

LOGGER = logging.getLogger(__name__)

router = APIRouter()


def _placeable_kind(kind: str) -> NodeKind:
    try:
        node_kind = NodeKind(kind)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown node kind: {kind}") from None
    if not node_kind.placeable:
        raise HTTPException(status_code=404, detail=f"Unknown node kind: {kind}")
    return node_kind


def _http_error(exc: ControlPlaneError) -> HTTPException:
    if exc.status_code >= 500:
        LOGGER.error("Control plane fault: %s", exc.detail)
    return HTTPException(status_code=exc.status_code, detail=exc.detail)


def _decision_response(decision: CallDecision) -> CallDecisionResponse:
    return CallDecisionResponse(
        admitted=decision.admitted,
        stage=decision.stage,
        admission=AuthorizeResponse.from_result(decision.admission) if decision.admission else None,
        validation=ValidateResponse.from_result(decision.validation) if decision.validation else None,
        node=NodeResponse.from_node(decision.node) if decision.node else None,
        reason=decision.no_candidate.reason if decision.no_candidate else None,
    )


@router.post("/admission/authorize", response_model=AuthorizeResponse)
async def authorize(
    payload: AuthorizeRequest,
    plane: ControlPlane = Depends(get_control_plane),
) -> AuthorizeResponse:
    result = await plane.gate.authorize(payload.inbound_number, payload.source_ip)
    return AuthorizeResponse.from_result(result)


@router.post("/admission/validate", response_model=ValidateResponse)
async def validate(
    payload: ValidateRequest,
    plane: ControlPlane = Depends(get_control_plane),
) -> ValidateResponse:
    try:
        tenant = await plane.load_tenant(payload.workspace_id)
    except ControlPlaneError as exc:
        raise _http_error(exc) from exc
    result = await plane.validator.validate(payload.number, tenant)
    return ValidateResponse.from_result(result)


@router.post("/placement/{kind}", response_model=PlacementResponse)
async def place(
    kind: str,
    constraints: ConstraintsRequest | None = None,
    plane: ControlPlane = Depends(get_control_plane),
) -> PlacementResponse:
    node_kind = _placeable_kind(kind)
    request = constraints or ConstraintsRequest()
    try:
        placed = await plane.selector.select_node(node_kind, request.to_constraints())
    except ControlPlaneError as exc:
        raise _http_error(exc) from exc

    if isinstance(placed, NoCandidateAvailable):
        return PlacementResponse(decision="no-candidate", reason=placed.reason)
    return PlacementResponse(decision="selected", node=NodeResponse.from_node(placed))


@router.post("/calls/inbound", response_model=CallDecisionResponse)
async def inbound_call(
    payload: InboundCallRequest,
    plane: ControlPlane = Depends(get_control_plane),
) -> CallDecisionResponse:
    try:
        decision = await plane.admit_inbound(
            payload.inbound_number,
            payload.source_ip,
            payload.caller_number,
            payload.constraints.to_constraints(),
        )
    except ControlPlaneError as exc:
        raise _http_error(exc) from exc
    return _decision_response(decision)


@router.post("/calls/outbound", response_model=CallDecisionResponse)
async def outbound_call(
    payload: OutboundCallRequest,
    plane: ControlPlane = Depends(get_control_plane),
) -> CallDecisionResponse:
    try:
        decision = await plane.admit_outbound(
            payload.workspace_id,
            payload.caller_number,
            payload.constraints.to_constraints(),
        )
    except ControlPlaneError as exc:
        raise _http_error(exc) from exc
    return _decision_response(decision)


@router.post("/fleet/{kind}/{node_id}/report", response_model=NodeReportResponse)
async def report_node(
    kind: str,
    payload: NodeReportRequest,
    node_id: int = Path(ge=0, le=2**32 - 1),
    plane: ControlPlane = Depends(get_control_plane),
) -> NodeReportResponse:
    node_kind = _placeable_kind(kind)
    try:
        accepted = await plane.report(
            node_kind,
            node_id,
            sequence=payload.sequence,
            active_calls=payload.active_calls,
            cpu_pct=payload.cpu_pct,
            status=payload.member_status,
        )
    except ControlPlaneError as exc:
        raise _http_error(exc) from exc
    return NodeReportResponse(accepted=accepted)


@router.get("/fleet/members", response_model=list[MemberResponse])
async def list_members(
    plane: ControlPlane = Depends(get_control_plane),
) -> list[MemberResponse]:
    return [MemberResponse.from_record(record) for record in plane.members()]
