from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from oppflow.context import get_correlation_id
from oppflow.core.database import get_db
from oppflow.crm.schemas import (
    OpportunityCreate,
    OpportunityDeleteResult,
    OpportunityIdsRequest,
    OpportunityRead,
    OpportunityUpdate,
)
from oppflow.crm.service import opportunity_service
from oppflow.crm.triggers import TriggerError


logger = logging.getLogger("oppflow.crm.api")

opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(code=code, message=message, details=details, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _trigger_error_response(request: Request, code: str, exc: TriggerError) -> JSONResponse:
    logger.error("opportunity.trigger_error", extra={"status_code": 500, "error": str(exc)})
    return error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        code=code,
        message=str(exc),
        details=type(exc).__name__,
    )


@opportunities_router.post("/opportunities", response_model=list[OpportunityRead], status_code=status.HTTP_201_CREATED)
def create_opportunities(
    request: Request,
    dtos: list[OpportunityCreate],
    db: Session = Depends(get_db),
) -> list[OpportunityRead] | JSONResponse:
    try:
        return opportunity_service.create_opportunities(db, dtos)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_opportunity_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except TriggerError as exc:
        return _trigger_error_response(request, "crm_opportunity_create_failed", exc)


@opportunities_router.patch("/opportunities", response_model=list[OpportunityRead])
def update_opportunities(
    request: Request,
    dtos: list[OpportunityUpdate],
    db: Session = Depends(get_db),
) -> list[OpportunityRead] | JSONResponse:
    try:
        return opportunity_service.update_opportunities(db, dtos)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_opportunity_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except TriggerError as exc:
        return _trigger_error_response(request, "crm_opportunity_update_failed", exc)


@opportunities_router.post("/opportunities/delete", response_model=list[OpportunityDeleteResult])
def delete_opportunities(
    request: Request,
    dto: OpportunityIdsRequest,
    db: Session = Depends(get_db),
) -> list[OpportunityDeleteResult] | JSONResponse:
    try:
        return opportunity_service.delete_opportunities(db, dto.ids)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_opportunity_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except TriggerError as exc:
        return _trigger_error_response(request, "crm_opportunity_delete_failed", exc)


@opportunities_router.post("/opportunities/undelete", response_model=list[OpportunityRead])
def undelete_opportunities(
    request: Request,
    dto: OpportunityIdsRequest,
    db: Session = Depends(get_db),
) -> list[OpportunityRead] | JSONResponse:
    try:
        return opportunity_service.undelete_opportunities(db, dto.ids)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_opportunity_undelete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except TriggerError as exc:
        return _trigger_error_response(request, "crm_opportunity_undelete_failed", exc)


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.get_opportunity(db, opportunity_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_opportunity_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
