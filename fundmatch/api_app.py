import os
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import inspect

from fundmatch.api.routes import cron as cron_routes
from fundmatch.api.routes import preferences as preference_routes
from fundmatch.api.routes import results as result_routes
from fundmatch.config import get_settings
from fundmatch.db import init_db, get_engine
from fundmatch.logging_config import setup_logging

setup_logging("api")

app = FastAPI(title="FundMatch API", version="1.0.0")

origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]
fo = (get_settings().frontend_origin or "").strip()
if fo:
    origins.append(fo)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(set(origins)),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def _startup():
    init_if_missing = os.getenv("API_INIT_DB_IF_MISSING", "false").lower() in {"1", "true", "yes"}
    if init_if_missing:
        insp = inspect(get_engine())
        if not insp.has_table("matching_results"):
            init_db()


app.include_router(cron_routes.router)
app.include_router(preference_routes.router)
app.include_router(result_routes.router)


@app.get("/healthz")
def healthz():
    return {"ok": True}
