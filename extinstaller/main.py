from fastapi import FastAPI
import logging

import uvicorn

from extinstaller.logging_config import setup_logging

setup_logging()

app = FastAPI(
    title="extinstaller",
    response_model_by_alias=False,
)


logger = logging.getLogger("extinstaller.core")
logger.info("Extension installer service starting")

# Imported after setup_logging() so installer loggers pick up the file handlers.
from extinstaller.installation.api.router import router as installer_router  # noqa: E402

app.include_router(installer_router, prefix="/api/installer")
logger.info("Mounted installer router")


@app.get("/api/health")
def health() -> dict[str, str]:
    return {"status": "ok", "service": "extinstaller"}


def run() -> None:
    uvicorn.run("extinstaller.main:app", host="127.0.0.1", port=9002)
