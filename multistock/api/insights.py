from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session
from datetime import datetime
from typing import List, Optional

from multistock.application.insights import InsightEngine
from multistock.application.resolver import ResolvedTenant
from multistock.application.schemas import (
    CleanupReport, GenerateReport, InsightCreate, InsightRead, InsightStats, InsightStatusUpdate,
)
from multistock.core_settings import Settings, get_settings
from multistock.domain.clock import Clock
from multistock.domain.models import InsightCategory, InsightStatus, Severity
from .deps import get_channel, get_clock, get_partition_db, get_tenant_context

router = APIRouter(prefix="/insights", tags=["insights"])


class GenerateRequest(BaseModel):
    rules: Optional[List[str]] = None


def get_engine_for_tenant(
    db: Session = Depends(get_partition_db),
    context: ResolvedTenant = Depends(get_tenant_context),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings),
    channel=Depends(get_channel),
) -> InsightEngine:
    return InsightEngine(db, clock=clock, settings=settings, channel=channel, tenant_code=context.tenant_code)

@router.get("", response_model=list[InsightRead])
def list_insights(
    type: Optional[InsightCategory] = None,
    priority: Optional[Severity] = None,
    status: Optional[InsightStatus] = None,
    active_only: bool = False,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
    engine: InsightEngine = Depends(get_engine_for_tenant),
):
    return engine.list(
        type=type,
        priority=priority,
        status=status,
        active_only=active_only,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )

@router.post("", response_model=InsightRead, status_code=201)
def create_insight(payload: InsightCreate, engine: InsightEngine = Depends(get_engine_for_tenant)):
    return engine.create_manual(payload)

@router.get("/stats", response_model=InsightStats)
def insight_stats(engine: InsightEngine = Depends(get_engine_for_tenant)):
    return engine.stats()

@router.post("/generate", response_model=GenerateReport)
def generate_insights(
    payload: Optional[GenerateRequest] = None,
    engine: InsightEngine = Depends(get_engine_for_tenant),
):
    return engine.generate(rules=payload.rules if payload else None)

@router.delete("/cleanup", response_model=CleanupReport)
def cleanup_insights(engine: InsightEngine = Depends(get_engine_for_tenant)):
    return CleanupReport(deleted=engine.cleanup_expired())

@router.get("/{insight_id}", response_model=InsightRead)
def get_insight(insight_id: str, engine: InsightEngine = Depends(get_engine_for_tenant)):
    return engine.get(insight_id)

@router.patch("/{insight_id}/status", response_model=InsightRead)
def update_insight_status(
    insight_id: str,
    payload: InsightStatusUpdate,
    engine: InsightEngine = Depends(get_engine_for_tenant),
):
    return engine.update_status(insight_id, payload.status)
