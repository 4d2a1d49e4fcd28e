"""
Pydantic request schemas for the alert API.

Separated from the route handlers so they are reusable across the
codebase (WebSocket handlers, tests). Fields are deliberately loose:
shape is checked here, domain rules (required fields, enum values,
lengths, state) are checked by the services so every rejection carries
the same field-level ``errors`` mapping.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

class AlertCreateRequest(BaseModel):
    """Create an alert; omit ``status`` to dispatch immediately."""
    title: Optional[str] = Field(None, examples=["Flood Warning"])
    message: Optional[str] = Field(None, examples=["Evacuate low-lying areas of Riverside now."])
    severity: Optional[str] = Field(None, examples=["high"])
    channels: Optional[List[str]] = Field(None, examples=[["email", "sms"]])
    targeting: Optional[Dict[str, Any]] = Field(
        None, examples=[{"roles": ["subscriber"], "specific": [5]}],
    )
    status: Optional[str] = Field(None, description="draft | pending | sent", examples=["draft"])
    attachments: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None


class AlertUpdateRequest(BaseModel):
    """Partial alert update. Unknown fields are reported by the service."""
    model_config = ConfigDict(extra="allow")

    title: Optional[str] = None
    message: Optional[str] = None
    severity: Optional[str] = None
    channels: Optional[List[str]] = None
    targeting: Optional[Dict[str, Any]] = None
    attachments: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None


class AcknowledgeRequest(BaseModel):
    notes: Optional[str] = Field(None, examples=["Safe at home"])


# ---------------------------------------------------------------------------
# Incidents
# ---------------------------------------------------------------------------

class IncidentCreateRequest(BaseModel):
    title: Optional[str] = Field(None, examples=["Bridge flooding"])
    description: Optional[str] = Field(None, examples=["Water over the Riverside bridge deck"])
    location: Optional[str] = Field(None, examples=["Riverside bridge"])
    severity: Optional[str] = Field(None, examples=["high"])
    attachments: Optional[List[str]] = None


class IncidentUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    severity: Optional[str] = None
    attachments: Optional[List[str]] = None


class IncidentStatusRequest(BaseModel):
    status: Optional[str] = Field(None, examples=["investigating"])
    notes: Optional[str] = None


class IncidentResponseRequest(BaseModel):
    action: Optional[str] = Field(None, examples=["Dispatched rescue team"])
    notes: Optional[str] = None


class IncidentAlertRequest(BaseModel):
    """Escalate an incident into a dispatched alert."""
    message: Optional[str] = None
    channels: Optional[List[str]] = Field(None, examples=[["email", "push"]])
    targeting: Optional[Dict[str, Any]] = Field(None, examples=[{"roles": ["subscriber"]}])


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

class TemplateCreateRequest(BaseModel):
    name: Optional[str] = Field(None, examples=["flood-warning"])
    description: Optional[str] = None
    type: Optional[str] = Field(None, examples=["alert"])
    category: Optional[str] = Field(None, examples=["weather"])
    title: Optional[str] = Field(None, examples=["Flood warning for {{area}}"])
    content: Optional[str] = Field(None, examples=["Water expected to reach {{level}} by {{time}}."])
    variables: Optional[List[str]] = None
    translations: Optional[Dict[str, Dict[str, str]]] = None
    channels: Optional[List[str]] = Field(None, examples=[["email", "sms"]])
    severity: Optional[str] = Field(None, examples=["high"])
    is_active: Optional[bool] = None


class TemplateUpdateRequest(TemplateCreateRequest):
    model_config = ConfigDict(extra="allow")


class TemplateApplyRequest(BaseModel):
    variables: Dict[str, Any] = Field(default_factory=dict, examples=[{"area": "Riverside"}])
    targeting: Optional[Dict[str, Any]] = None
    language: str = Field("en", examples=["es"])
