"""
FastAPI Dependencies - Access to the running sale pipeline.

NO DICTIONARIES - All dependencies return typed objects.
"""

from fastapi import HTTPException, Request, status

from batchsale.services.sale import SalePipeline


def get_pipeline(request: Request) -> SalePipeline:
    """
    Sale pipeline started by the application lifespan.

    Raises 503 while the application is still starting.
    """
    pipeline: SalePipeline | None = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sale pipeline not started",
        )
    return pipeline
