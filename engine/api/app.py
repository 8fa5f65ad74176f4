from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from common.config import AppConfig, get_settings
from common.state import get_state
from .diagnostics import router as diagnostics_router


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    config = config or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state = get_state()
        await state.init()
        yield
        await state.close()

    app = FastAPI(title=config.name, lifespan=lifespan)
    app.include_router(diagnostics_router, prefix=config.api.prefix, tags=["coordination"])
    return app
