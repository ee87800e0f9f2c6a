"""
API Request/Response Models
===========================
Pydantic models with input validation.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class HealthResponse(BaseModel):
    status: str
    version: str
    store: str
    concepts: Optional[int] = None
    scheduler_running: bool
    timestamp: str


class MetricsPayload(BaseModel):
    """A metrics vector submitted for anomaly evaluation."""
    compression_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    graph_entropy_change: float = 0.0
    semantic_drift: float = Field(default=0.0, ge=0.0, le=1.0)
    curvature: float = Field(default=0.0, ge=0.0, le=1.0)
    adaptive_match_score: float = Field(default=0.5, ge=0.0, le=1.0)
    lifeworld_complexity: float = Field(default=0.0, ge=0.0)


class AnomalyRequest(BaseModel):
    metrics: Optional[MetricsPayload] = Field(
        default=None,
        description="Metrics to evaluate; the current snapshot is used when omitted",
    )


class AnomalyResponse(BaseModel):
    ok: bool = True
    metrics: Dict[str, Any]
    warnings: List[str]


class ConvergenceRunRequest(BaseModel):
    threshold: Optional[float] = Field(
        default=None,
        ge=0.0,
        description="Minimum oracle similarity for a merge (default from config)",
    )


class PredictiveRunRequest(BaseModel):
    probability_threshold: Optional[float] = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Minimum convergence probability for an early collapse",
    )


class ReinforceRequest(BaseModel):
    user_id: int = Field(..., ge=0)
    name: str = Field(..., min_length=1, max_length=256)
    description: Optional[str] = Field(default=None, max_length=4096)
    category: Optional[str] = Field(default=None, max_length=128)
    importance: int = Field(default=5, ge=1, le=10)
    conversation_id: Optional[int] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Concept name cannot be empty or whitespace only")
        return v.strip()
