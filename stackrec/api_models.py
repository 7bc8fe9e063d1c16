from __future__ import annotations

from pydantic import BaseModel, Field


class StackRequest(BaseModel):
    file: str | None = Field(None, description="Path to a YAML/JSON stack file; the built-in web app stack if omitted")
    base_port: int | None = Field(None, ge=1, le=64535, description="Override the stack's primary port")


class ApplyRequest(StackRequest):
    check_health: bool = Field(False, description="Probe nginx_url/health after a successful apply")
    max_wait_s: int = Field(30, ge=1, le=600)


class ApplyResponse(BaseModel):
    stack: str
    ok: bool
    cancelled: bool = False
    resources: list[dict]
    outputs: dict = Field(default_factory=dict)
    health: dict | None = None
