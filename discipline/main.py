from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from discipline.api.v1.detentions.router import router as detentions_router
from discipline.core.config import settings
from discipline.core.logging_config import configure_logging


def create_app() -> FastAPI:
    configure_logging(settings.log_level)
    app = FastAPI(title="Discipline Backend")

    # CORS: allow frontend to call this API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(detentions_router)

    return app


app = create_app()
