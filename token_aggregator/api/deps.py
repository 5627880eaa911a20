"""API dependencies and the shared response envelope helpers."""

import time
import uuid
from typing import Any, Optional

from fastapi import HTTPException, Request

from token_aggregator.realtime.hub import ConnectionHub
from token_aggregator.scheduler import UpdateScheduler
from token_aggregator.schemas.api import ApiResponse, ResponseMeta
from token_aggregator.services.aggregator import TokenAggregator


class ApiError(HTTPException):
    """HTTP error rendered inside the standard envelope."""

    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(status_code=status_code, detail=message)
        self.code = code
        self.message = message


def get_aggregator(request: Request) -> TokenAggregator:
    return request.app.state.aggregator


def get_hub(request: Request) -> ConnectionHub:
    return request.app.state.hub


def get_scheduler(request: Request) -> Optional[UpdateScheduler]:
    return getattr(request.app.state, "scheduler", None)


def response_meta(request: Request) -> ResponseMeta:
    started = getattr(request.state, "started", None) or time.perf_counter()
    request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
    return ResponseMeta(
        request_id=request_id,
        response_time_ms=int((time.perf_counter() - started) * 1000),
    )


def ok(request: Request, data: Any) -> ApiResponse:
    return ApiResponse(success=True, data=data, meta=response_meta(request))
