"""
Control Plane API Application Factory
"""

import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..errors import ControlPlaneError, StorageError
from ..system import ControlPlane
from .audits import router as audits_router
from .batches import router as batches_router
from .dependencies import get_control_plane
from .glaccounts import router as glaccounts_router
from .journal_entries import router as journal_entries_router
from .makercheckers import router as makercheckers_router
from .permissions import configurations_router
from .permissions import router as permissions_router

logger = logging.getLogger("finops.api")


def create_app(control_plane: Optional[ControlPlane] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        control_plane: Control plane to serve; the process-wide instance
            from configuration when None
    """
    app = FastAPI(
        title="Financial Operations Control Plane API",
        description="Double-entry ledger, maker-checker approvals and audit timeline",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if control_plane is not None:
        app.dependency_overrides[get_control_plane] = lambda: control_plane

    @app.exception_handler(ControlPlaneError)
    async def control_plane_error_handler(request: Request, exc: ControlPlaneError) -> JSONResponse:
        """Typed errors keep their status code and correlation id"""
        body = exc.to_dict()
        if isinstance(exc, StorageError):
            body["message"] = "Internal storage error"
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Malformed request bodies and query strings are plain validation errors"""
        problems = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            problems.append(f"{field}: {error['msg']}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "code": "validation_error",
                "message": "; ".join(problems) or "Invalid request",
                "status_code": 400,
                "correlation_id": None,
            }
        )

    app.include_router(journal_entries_router, prefix="/journalentries", tags=["Journal Entries"])
    app.include_router(glaccounts_router, prefix="/glaccounts", tags=["GL Accounts"])
    app.include_router(permissions_router, prefix="/permissions", tags=["Permissions"])
    app.include_router(configurations_router, prefix="/configurations", tags=["Configurations"])
    app.include_router(makercheckers_router, prefix="/makercheckers", tags=["Maker Checker"])
    app.include_router(batches_router, prefix="/batches", tags=["Batches"])
    app.include_router(audits_router, prefix="/audits", tags=["Audits"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "finops_control_api",
            "version": __version__
        }

    return app


# Create the app instance for uvicorn
app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "finops_control.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
