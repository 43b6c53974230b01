from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, conint


class _DecimalAsStr(BaseModel):
    class Config:
        str_strip_whitespace = True
        json_encoders = {Decimal: lambda d: str(d)}
        extra = "ignore"


class ErrorRes(_DecimalAsStr):
    error: str = Field(..., description="Human-readable error message.")


# =========================
# Donation action
# =========================

class ActionParameter(_DecimalAsStr):
    name: str = Field(..., description="Query parameter substituted into the href template.")
    label: str = Field(..., description="Placeholder shown by the client.")
    required: bool = Field(False, description="Whether the client must collect a value.")


class LinkedAction(_DecimalAsStr):
    type: Literal["transaction"] = Field("transaction", description="Action kind.")
    label: str = Field(..., description="Button label.")
    href: str = Field(..., description="POST target, may contain {param} templates.")
    parameters: Optional[List[ActionParameter]] = Field(None, description="User inputs for templated hrefs.")


class ActionLinks(_DecimalAsStr):
    actions: List[LinkedAction] = Field(..., description="Suggested actions, in display order.")


class ActionGetRes(_DecimalAsStr):
    type: Literal["action"] = Field("action", description="Descriptor kind.")
    title: str = Field(..., description="Card title.")
    icon: str = Field(..., description="Absolute icon URL.")
    description: str = Field(..., description="Card body text.")
    label: str = Field(..., description="Default button label.")
    links: ActionLinks


class ActionPostReq(_DecimalAsStr):
    account: str = Field(..., description="Payer public key (base58).")


class ActionPostRes(_DecimalAsStr):
    type: Literal["transaction"] = Field("transaction", description="Response kind.")
    transaction: str = Field(..., description="Unsigned transaction, base64 wire format.")
    message: str = Field(..., description="Message shown to the payer.")


class ActionRule(_DecimalAsStr):
    pathPattern: str = Field(..., description="Website path pattern.")
    apiPath: str = Field(..., description="Action API path the pattern maps to.")


class ActionsJson(_DecimalAsStr):
    rules: List[ActionRule]


# =========================
# Health
# =========================

class HealthRes(_DecimalAsStr):
    status: Literal["healthy", "degraded", "unhealthy"] = Field(..., description="Overall status.")
    timestamp: str = Field(..., description="ISO-8601 timestamp (UTC).")
    uptime_seconds: conint(ge=0) = Field(..., description="Seconds since the API started.")
    checks: Dict[str, dict] = Field(default_factory=dict, description="Per-dependency results.")
    system: Optional[dict] = Field(None, description="Host resource usage.")


class LivenessRes(_DecimalAsStr):
    status: Literal["alive"] = Field("alive", description="Process is up.")
    timestamp: str = Field(..., description="ISO-8601 timestamp (UTC).")


class ReadinessRes(_DecimalAsStr):
    status: Literal["ready", "not_ready"] = Field(..., description="Whether traffic can be served.")
    timestamp: str = Field(..., description="ISO-8601 timestamp (UTC).")
    reason: Optional[str] = Field(None, description="Why the service is not ready.")
