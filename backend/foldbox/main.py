from fastapi import FastAPI

from foldbox.server.api import router as sandbox_router
from foldbox.utils.logger import setup_logger

logger = setup_logger()


def get_application() -> FastAPI:
    application = FastAPI(title="Foldbox Sandbox Service")
    application.include_router(sandbox_router)

    @application.get("/health")
    def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    logger.info("Foldbox sandbox service initialized")
    return application


app = get_application()
