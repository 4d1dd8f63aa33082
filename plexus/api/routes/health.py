"""Health check endpoint."""

from fastapi import APIRouter, Request

from plexus import __version__

router = APIRouter(tags=["health"])


@router.get("/api/health")
async def health_check(request: Request) -> dict:
    table = request.app.state.registry.table
    return {
        "status": "ok",
        "productCode": request.app.state.settings.PRODUCT_CODE,
        "plugins": len(table.plugins),
        "routes": len(table.routes),
        "version": __version__,
    }
