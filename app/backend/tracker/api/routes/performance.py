"""Performance analytics endpoints for the dashboard."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response

from tracker.services.performance_dashboard import PerformanceDashboard

router = APIRouter(prefix="/performance", tags=["performance"])


def get_performance_dashboard(request: Request) -> PerformanceDashboard:
    return request.app.state.performance_dashboard


@router.get("")
def get_performance(dashboard: PerformanceDashboard = Depends(get_performance_dashboard)) -> dict[str, object]:
    return dashboard.get_summaries().model_dump(mode="json")


@router.post("/refresh")
def refresh_performance(dashboard: PerformanceDashboard = Depends(get_performance_dashboard)) -> dict[str, object]:
    return dashboard.refresh().model_dump(mode="json")


@router.get("/export")
def export_performance(
    format: str = Query(default="xlsx"),
    dashboard: PerformanceDashboard = Depends(get_performance_dashboard),
) -> Response:
    exported = dashboard.export(format)
    return Response(
        content=exported.content,
        media_type=exported.media_type,
        headers={"Content-Disposition": f'attachment; filename="{exported.filename}"'},
    )


@router.get("/cache")
def get_cache_stats(dashboard: PerformanceDashboard = Depends(get_performance_dashboard)) -> dict[str, object]:
    stats = dashboard.cache_stats()
    return {
        "report_key": dashboard.report_key,
        "size_bytes": stats.size_bytes,
        "age_seconds": stats.age_seconds,
    }
