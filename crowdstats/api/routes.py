"""
Contributor report routes.

Handles:
  GET /api/crowd/by-{dimension}              : unique active persons per value
  GET /api/crowd/by-project                  : unique active persons per project
  GET /api/crowd/by-country-language         : country x language pairs
  GET /api/crowd/demographics/{cross_tab}    : two-dimension matrices
  GET /api/crowd/kyc-status                  : unique persons per KYC status
  GET /api/crowd/active-contributors         : unique active persons, active assignments
  GET /api/crowd/onboarding-contributors     : unique persons in any status
  GET /api/crowd/avg-app-received-to-{step}  : mean days from application received
  GET /api/crowd/metrics                     : headline totals
  GET /api/crowd/summary                     : totals, appends today's snapshot
  GET /api/crowd/trends                      : series read from the snapshot log
"""

from typing import Any, Awaitable, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request

from crowdstats.core.constants import DEFAULT_TREND_DAYS
from crowdstats.engine.reports import CROSS_TABS, ReportService
from crowdstats.remote.errors import FirstPageFailure
from crowdstats.utils.log_utils import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/crowd", tags=["Contributor Reports"])


def get_report_service(request: Request) -> ReportService:
    return request.app.state.report_service


def _remote_unavailable(e: FirstPageFailure) -> HTTPException:
    logger.error(f"[Routes] Remote source failure: {e}")
    return HTTPException(
        status_code=502,
        detail={
            "error": "REMOTE_SOURCE_UNAVAILABLE",
            "message": str(e),
            "error_code": e.error_code,
        },
    )


async def _run(report: Awaitable[Dict[str, Any]]) -> Dict[str, Any]:
    try:
        return await report
    except FirstPageFailure as e:
        raise _remote_unavailable(e)


async def _dimension(service: ReportService, name: str, limit: Optional[int], refresh: bool):
    return await _run(service.dimension_report(name, limit=limit, refresh=refresh))


# ---------------------------------------------------------------------------
# Single-dimension reports
# ---------------------------------------------------------------------------

@router.get("/by-country")
async def by_country(
    limit: Optional[int] = Query(None, ge=1),
    refresh: bool = False,
    service: ReportService = Depends(get_report_service),
):
    return await _dimension(service, "country", limit, refresh)


@router.get("/by-language")
async def by_language(
    limit: Optional[int] = Query(None, ge=1),
    refresh: bool = False,
    service: ReportService = Depends(get_report_service),
):
    return await _dimension(service, "language", limit, refresh)


@router.get("/by-age")
async def by_age(
    refresh: bool = False,
    service: ReportService = Depends(get_report_service),
):
    """Age brackets, always in bracket order and zero-filled."""
    return await _dimension(service, "age", None, refresh)


@router.get("/by-gender")
async def by_gender(
    limit: Optional[int] = Query(None, ge=1),
    refresh: bool = False,
    service: ReportService = Depends(get_report_service),
):
    return await _dimension(service, "gender", limit, refresh)


@router.get("/by-education")
async def by_education(
    limit: Optional[int] = Query(None, ge=1),
    refresh: bool = False,
    service: ReportService = Depends(get_report_service),
):
    return await _dimension(service, "education", limit, refresh)


@router.get("/by-source")
async def by_source(
    limit: Optional[int] = Query(None, ge=1),
    refresh: bool = False,
    service: ReportService = Depends(get_report_service),
):
    return await _dimension(service, "source", limit, refresh)


@router.get("/by-status")
async def by_status(
    limit: Optional[int] = Query(None, ge=1),
    refresh: bool = False,
    service: ReportService = Depends(get_report_service),
):
    return await _dimension(service, "status", limit, refresh)


@router.get("/by-type")
async def by_type(
    limit: Optional[int] = Query(None, ge=1),
    refresh: bool = False,
    service: ReportService = Depends(get_report_service),
):
    return await _dimension(service, "type", limit, refresh)


@router.get("/by-project")
async def by_project(
    limit: Optional[int] = Query(None, ge=1),
    refresh: bool = False,
    service: ReportService = Depends(get_report_service),
):
    try:
        return await service.by_project(limit=limit, refresh=refresh)
    except FirstPageFailure as e:
        raise _remote_unavailable(e)


@router.get("/by-country-language")
async def by_country_language(
    limit: Optional[int] = Query(None, ge=1),
    refresh: bool = False,
    service: ReportService = Depends(get_report_service),
):
    try:
        return await service.by_country_language(limit=limit, refresh=refresh)
    except FirstPageFailure as e:
        raise _remote_unavailable(e)


# ---------------------------------------------------------------------------
# Cross-tabulations
# ---------------------------------------------------------------------------

@router.get("/demographics/{name}")
async def demographics(
    name: str,
    refresh: bool = False,
    service: ReportService = Depends(get_report_service),
):
    if name not in CROSS_TABS:
        raise HTTPException(
            status_code=404,
            detail={
                "error": "REPORT_NOT_FOUND",
                "report": name,
                "available": sorted(CROSS_TABS),
            },
        )
    try:
        return await service.cross_tab(name, refresh=refresh)
    except FirstPageFailure as e:
        raise _remote_unavailable(e)


# ---------------------------------------------------------------------------
# Assignment-level reports + headline totals
# ---------------------------------------------------------------------------

@router.get("/kyc-status")
async def kyc_status(
    limit: Optional[int] = Query(None, ge=1),
    refresh: bool = False,
    service: ReportService = Depends(get_report_service),
):
    return await _run(service.assignment_report("kyc-status", limit=limit, refresh=refresh))


@router.get("/active-contributors")
async def active_contributors(
    refresh: bool = False,
    service: ReportService = Depends(get_report_service),
):
    return await _run(service.active_contributors(refresh=refresh))


@router.get("/onboarding-contributors")
async def onboarding_contributors(
    refresh: bool = False,
    service: ReportService = Depends(get_report_service),
):
    return await _run(service.onboarding_contributors(refresh=refresh))


@router.get("/avg-app-received-to-applied")
async def avg_app_received_to_applied(
    refresh: bool = False,
    service: ReportService = Depends(get_report_service),
):
    return await _run(service.average_duration("app-received-to-applied", refresh=refresh))


@router.get("/avg-app-received-to-active")
async def avg_app_received_to_active(
    refresh: bool = False,
    service: ReportService = Depends(get_report_service),
):
    return await _run(service.average_duration("app-received-to-active", refresh=refresh))


@router.get("/metrics")
async def metrics(
    refresh: bool = False,
    service: ReportService = Depends(get_report_service),
):
    return await _run(service.metrics(refresh=refresh))


# ---------------------------------------------------------------------------
# Summary + trends
# ---------------------------------------------------------------------------

@router.get("/summary")
async def summary(
    background_tasks: BackgroundTasks,
    refresh: bool = False,
    service: ReportService = Depends(get_report_service),
):
    """Totals plus country/language breakdowns; a fresh result is snapshotted after responding."""
    try:
        response = await service.summary(refresh=refresh)
    except FirstPageFailure as e:
        raise _remote_unavailable(e)
    background_tasks.add_task(service.record_snapshot, response)
    return response


@router.get("/trends")
def trends(
    days: int = Query(DEFAULT_TREND_DAYS, ge=1),
    series: Optional[List[str]] = Query(None),
    service: ReportService = Depends(get_report_service),
):
    return service.trends(days=days, series=series)
