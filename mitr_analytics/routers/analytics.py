from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel

from mitr_analytics.analytics import service
from mitr_analytics.config import get_section
from mitr_analytics.extraction import jobs, trigger
from mitr_analytics.extraction.conversation_store import get_conversation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/analytics", tags=["analytics"])


def _internal_error(message: str, exc: Exception | None = None) -> HTTPException:
    if exc is not None:
        logger.exception(message)
    return HTTPException(status_code=500, detail=message)


def _filters(
    date_from: Optional[datetime],
    date_to: Optional[datetime],
    location: Optional[str],
    industry: Optional[str],
    business_size: Optional[str],
    languages: Optional[str],
    scheme_id: Optional[str] = None,
) -> dict:
    return {
        "date_from": date_from,
        "date_to": date_to,
        "location": location,
        "industry": industry,
        "business_size": business_size,
        "languages": [v.strip() for v in (languages or "").split(",") if v.strip()],
        "scheme_id": scheme_id,
    }


class ManualExtractionPayload(BaseModel):
    conversation_id: str
    priority: str = "high"


class PurgePayload(BaseModel):
    days_old: int | None = None


@router.get("/summary")
async def get_summary(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    location: Optional[str] = None,
    industry: Optional[str] = None,
    business_size: Optional[str] = None,
    languages: Optional[str] = Query(None, description="Comma-separated language tags"),
):
    try:
        return service.get_summary(_filters(date_from, date_to, location, industry, business_size, languages))
    except Exception as e:
        raise _internal_error("Failed to build analytics summary.", e)


@router.get("/users")
async def list_user_attributes(
    page: int = Query(1, ge=1),
    page_size: int = Query(service.DEFAULT_PAGE_SIZE, ge=1, le=service.MAX_PAGE_SIZE),
    sort_by: str = "created_at",
    sort_order: str = "desc",
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    location: Optional[str] = None,
    industry: Optional[str] = None,
    business_size: Optional[str] = None,
    languages: Optional[str] = None,
):
    try:
        return service.get_user_attributes(
            _filters(date_from, date_to, location, industry, business_size, languages),
            page=page,
            page_size=page_size,
            sort_by=sort_by,
            sort_order=sort_order,
        )
    except Exception as e:
        raise _internal_error("Failed to list user attributes.", e)


@router.get("/schemes")
async def list_scheme_interests(
    page: int = Query(1, ge=1),
    page_size: int = Query(service.DEFAULT_PAGE_SIZE, ge=1, le=service.MAX_PAGE_SIZE),
    sort_by: str = "last_mentioned_at",
    sort_order: str = "desc",
    scheme_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    location: Optional[str] = None,
    industry: Optional[str] = None,
    business_size: Optional[str] = None,
    languages: Optional[str] = None,
):
    try:
        return service.get_scheme_interests(
            _filters(date_from, date_to, location, industry, business_size, languages, scheme_id),
            page=page,
            page_size=page_size,
            sort_by=sort_by,
            sort_order=sort_order,
        )
    except Exception as e:
        raise _internal_error("Failed to list scheme interests.", e)


@router.get("/filters")
async def get_filter_options():
    try:
        return service.get_filter_options()
    except Exception as e:
        raise _internal_error("Failed to load filter options.", e)


@router.get("/export")
async def export_analytics(
    format: str = "csv",
    anonymize: bool = False,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    location: Optional[str] = None,
    industry: Optional[str] = None,
    business_size: Optional[str] = None,
    languages: Optional[str] = None,
):
    if format.strip().lower() not in service.EXPORT_FORMATS:
        raise HTTPException(status_code=400, detail="Export format must be 'csv' or 'json'.")
    try:
        export = service.export_data(
            format,
            _filters(date_from, date_to, location, industry, business_size, languages),
            anonymize=anonymize,
        )
    except Exception as e:
        raise _internal_error("Failed to export analytics data.", e)
    return Response(
        content=export["content"],
        media_type=export["media_type"],
        headers={"Content-Disposition": f"attachment; filename={export['filename']}"},
    )


@router.post("/users/{user_id}/anonymize")
async def anonymize_user(user_id: str):
    try:
        return await service.anonymize_user_data(user_id)
    except Exception as e:
        raise _internal_error("Failed to anonymize user data.", e)


@router.post("/cache/invalidate")
async def invalidate_cache():
    return {"status": "ok", "removed": service.invalidate_cache()}


@router.get("/cache/stats")
async def cache_stats():
    return service.get_cache_stats()


@router.post("/extract")
async def manual_extraction(payload: ManualExtractionPayload):
    conversation = get_conversation(payload.conversation_id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    try:
        job_id = await trigger.queue_extraction_job(payload.conversation_id, priority=payload.priority)
    except Exception as e:
        raise _internal_error("Failed to queue extraction job.", e)
    if not job_id:
        return {"status": "duplicate", "message": "An extraction job for this snapshot is already pending/processing."}
    return {"status": "queued", "job_id": job_id}


@router.post("/conversations/{conversation_id}/evaluate")
async def evaluate_conversation(conversation_id: str):
    try:
        return await trigger.evaluate_and_queue(conversation_id)
    except Exception as e:
        raise _internal_error("Failed to evaluate conversation.", e)


@router.get("/jobs/stats")
async def job_stats():
    try:
        return jobs.get_queue_stats()
    except Exception as e:
        raise _internal_error("Failed to load queue statistics.", e)


@router.get("/jobs/worker")
async def job_worker_state():
    return jobs.get_processor().state()


@router.get("/jobs/{job_id}")
async def get_job(job_id: str):
    row = jobs.get_job(job_id)
    if not row:
        raise HTTPException(status_code=404, detail="Job not found")
    return jobs.public_job(row)


@router.post("/jobs/process")
async def process_jobs_now():
    try:
        return await jobs.get_processor().process_extraction_queue()
    except Exception as e:
        raise _internal_error("Failed to process extraction queue.", e)


@router.post("/jobs/retry-failed")
async def retry_failed_jobs():
    try:
        return {"status": "ok", "reset": await jobs.retry_failed_jobs()}
    except Exception as e:
        raise _internal_error("Failed to reset failed jobs.", e)


@router.post("/jobs/purge")
async def purge_completed_jobs(payload: PurgePayload):
    days = payload.days_old
    if days is None:
        days = int(get_section("job_queue").get("retention_days", 30))
    try:
        return {"status": "ok", "deleted": await jobs.clear_old_jobs(days_old=days)}
    except Exception as e:
        raise _internal_error("Failed to purge completed jobs.", e)
