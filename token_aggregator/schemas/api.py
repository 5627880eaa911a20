from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

from token_aggregator.schemas.token import Token, utcnow

T = TypeVar("T")


class ResponseMeta(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    request_id: str
    response_time_ms: int


class ErrorBody(BaseModel):
    code: str
    message: str


class ApiResponse(BaseModel, Generic[T]):
    """Uniform envelope for every REST response."""

    success: bool
    data: Optional[T] = None
    error: Optional[ErrorBody] = None
    meta: ResponseMeta


class TokenList(BaseModel):
    tokens: List[Token]
    count: int


class BatchResult(BaseModel):
    tokens: List[Token]
    not_found: List[str]


class ServiceStatus(BaseModel):
    status: str
    last_check: Optional[datetime] = None


class HealthStatus(BaseModel):
    status: str
    uptime_ms: int
    timestamp: datetime = Field(default_factory=utcnow)
    services: Dict[str, ServiceStatus]
    stats: Dict[str, Any]
