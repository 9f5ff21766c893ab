"""API-facing Pydantic models."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from admission.results import AdmissionOutcome, AdmissionResult, ValidationOutcome, ValidationResult
from fleet.membership import MemberRecord
from fleet.nodes import MemberStatus, Node, NodeConstraints


class ConstraintsRequest(BaseModel):
    rtc_optimized: bool = False
    require_capability: bool = False
    region: str | None = None

    def to_constraints(self) -> NodeConstraints:
        return NodeConstraints(
            rtc_optimized=self.rtc_optimized,
            require_capability=self.require_capability,
            region=self.region,
        )


class AuthorizeRequest(BaseModel):
    inbound_number: str = Field(min_length=1)
    source_ip: str = Field(min_length=1)


class AuthorizeResponse(BaseModel):
    decision: AdmissionOutcome
    registry: str | None = None
    network: str | None = None
    did: str | None = None
    detail: str | None = None

    @classmethod
    def from_result(cls, result: AdmissionResult) -> AuthorizeResponse:
        return cls(
            decision=result.outcome,
            registry=result.registry.value if result.registry else None,
            network=result.network,
            did=result.did,
            detail=result.detail,
        )


class ValidateRequest(BaseModel):
    number: str = Field(min_length=1)
    workspace_id: int


class ValidateResponse(BaseModel):
    decision: ValidationOutcome
    canonical_number: str | None = None
    reason: str | None = None

    @classmethod
    def from_result(cls, result: ValidationResult) -> ValidateResponse:
        return cls(
            decision=result.outcome,
            canonical_number=result.canonical_number,
            reason=result.reason,
        )


class NodeResponse(BaseModel):
    id: int
    kind: str
    public_address: str
    private_address: str | None = None
    rtc_optimized: bool
    region: str | None = None
    status: str | None = None
    active_calls: int | None = None
    cpu_pct: float | None = None

    @classmethod
    def from_node(cls, node: Node) -> NodeResponse:
        return cls(
            id=node.id,
            kind=node.kind.value,
            public_address=node.public_address,
            private_address=node.private_address,
            rtc_optimized=node.rtc_optimized,
            region=node.region,
            status=node.live.status.label if node.live else None,
            active_calls=node.live.active_calls if node.live else None,
            cpu_pct=node.live.cpu_pct if node.live else None,
        )


class PlacementResponse(BaseModel):
    decision: str = Field(description="'selected' or 'no-candidate'.")
    node: NodeResponse | None = None
    reason: str | None = None


class InboundCallRequest(BaseModel):
    inbound_number: str = Field(min_length=1)
    source_ip: str = Field(min_length=1)
    caller_number: str = Field(min_length=1)
    constraints: ConstraintsRequest = Field(default_factory=ConstraintsRequest)


class OutboundCallRequest(BaseModel):
    workspace_id: int
    caller_number: str = Field(min_length=1)
    constraints: ConstraintsRequest = Field(default_factory=ConstraintsRequest)


class CallDecisionResponse(BaseModel):
    admitted: bool
    stage: str
    admission: AuthorizeResponse | None = None
    validation: ValidateResponse | None = None
    node: NodeResponse | None = None
    reason: str | None = None


class NodeReportRequest(BaseModel):
    sequence: int = Field(ge=0, le=2**64 - 1)
    active_calls: int = Field(ge=0)
    cpu_pct: float = Field(ge=0.0, le=100.0)
    status: Literal["alive", "suspect", "dead"] = "alive"

    @property
    def member_status(self) -> MemberStatus:
        return MemberStatus[self.status.upper()]


class NodeReportResponse(BaseModel):
    accepted: bool


class MemberResponse(BaseModel):
    kind: str
    node_id: int
    status: str
    sequence: int
    active_calls: int
    cpu_pct: float
    address: str

    @classmethod
    def from_record(cls, record: MemberRecord) -> MemberResponse:
        return cls(
            kind=record.kind.value,
            node_id=record.node_id,
            status=record.status.label,
            sequence=record.sequence,
            active_calls=record.active_calls,
            cpu_pct=record.cpu_pct,
            address=f"{record.host}:{record.port}",
        )
