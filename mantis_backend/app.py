from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mantis_backend.application import configure_mantis_service
from mantis_backend.core.logging_setup import setup_logging
from mantis_backend.core.settings import MantisSettings, cors_origins
from mantis_backend.routes import mantis


def create_app(settings: MantisSettings | None = None) -> FastAPI:
    setup_logging()
    app = FastAPI(title="Mantis Dashboard API", version="0.1.0")

    configure_mantis_service(settings or MantisSettings.from_env())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(mantis.router, prefix="/api")

    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        """Provide a lightweight landing page for container checks."""
        return JSONResponse(
            {
                "message": "Mantis Dashboard API",
                "docs": "/docs",
                "health": "/api/mantis/health",
            }
        )

    return app


app = create_app()
