# Run from project root: uvicorn auditor.main:app --reload

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from auditor.api.routes import router
from auditor.core.config import load_settings

logging.basicConfig(level=logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Fails startup on invalid configuration (e.g. blank audit queries).
    app.state.settings = load_settings()
    yield


app = FastAPI(title="Policy Compliance Auditor", lifespan=lifespan)
app.include_router(router)
