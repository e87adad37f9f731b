import uuid
from datetime import datetime
from typing import List, Optional

from sqlmodel import JSON, Field, SQLModel

from portrait_batch.db.types import UTCDateTime, utcnow


class CatalogImageBase(SQLModel):
    filename: str
    public_url: str
    storage_path: str
    mime_type: str = "image/png"
    file_size: Optional[int] = None
    prompt_text: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list, sa_type=JSON)
    breed_id: Optional[str] = None
    coat_id: Optional[str] = None
    outfit_id: Optional[str] = None
    format_id: Optional[str] = None
    theme_id: Optional[str] = None
    style_id: Optional[str] = None
    cloudinary_public_id: Optional[str] = None
    cloudinary_version: Optional[str] = None
    batch_job_id: Optional[str] = Field(default=None, index=True)
    is_public: bool = True


class CatalogImage(CatalogImageBase, table=True):
    __tablename__ = "catalog_images"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
