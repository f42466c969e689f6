import logging

import uvicorn
from fastapi import FastAPI

from cardpoints.api.routes.health import router as health_router
from cardpoints.api.routes.rewards import router as rewards_router
from cardpoints.config import settings

app = FastAPI(title="CardPoints API", version="0.1.0")
app.include_router(health_router)
app.include_router(rewards_router)


def run() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("cardpoints.api.app:app", host=settings.app_host, port=settings.app_port, reload=False)
