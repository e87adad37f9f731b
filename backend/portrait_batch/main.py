import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from portrait_batch.api.endpoints import batch_jobs, status
from portrait_batch.core.config import settings
from portrait_batch.core.error_handlers import register_batch_error_handlers
from portrait_batch.db.init_db import init_db
from portrait_batch.services.job_runner import job_runner

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title=settings.PROJECT_NAME, version=settings.APP_VERSION)
register_batch_error_handlers(app)


@app.on_event("startup")
async def on_startup():
    init_db()
    await job_runner.start()


@app.on_event("shutdown")
async def on_shutdown():
    await job_runner.stop()

# CORS
# Set all CORS enabled origins
if settings.BACKEND_CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin).rstrip("/") for origin in settings.BACKEND_CORS_ORIGINS],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(batch_jobs.router, prefix=f"{settings.API_V1_STR}/batch-jobs", tags=["batch-jobs"])
app.include_router(status.router, prefix=settings.API_V1_STR, tags=["status"])


@app.get("/")
def root():
    return {"message": f"Welcome to the {settings.PROJECT_NAME} API"}
