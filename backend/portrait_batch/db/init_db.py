import logging

from sqlmodel import SQLModel

from portrait_batch.core.config import settings
from portrait_batch.db.engine import engine
# Import models so they are registered with SQLModel.metadata
from portrait_batch.models.batch_job import BatchJob, BatchJobItem  # noqa: F401
from portrait_batch.models.image import CatalogImage  # noqa: F401

logger = logging.getLogger(__name__)


def init_db(bind=None):
    settings.ensure_dirs()
    SQLModel.metadata.create_all(bind or engine)
    logger.info("Database ready at %s", (bind or engine).url)
