"""Store generated images and register them in the image catalog."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlmodel import Session

from portrait_batch.core.cloudinary_client import ArtifactUploadError, CloudinaryClient
from portrait_batch.core.generator_client import GeneratedVariation
from portrait_batch.db.engine import engine as db_engine
from portrait_batch.db.types import utcnow
from portrait_batch.models.image import CatalogImage

logger = logging.getLogger(__name__)

BATCH_TAGS = ["batch-generated", "gemini-variation"]


@dataclass
class ArtifactRef:
    id: str
    url: str


class ArtifactStore:
    def __init__(self, uploader: Optional[CloudinaryClient] = None, bind=None):
        self.uploader = uploader or CloudinaryClient()
        self.engine = bind if bind is not None else db_engine

    def store(
        self,
        variation: GeneratedVariation,
        *,
        job_id: str,
        item_index: int,
        source_attributes: Optional[Dict[str, Any]] = None,
    ) -> ArtifactRef:
        timestamp = utcnow().strftime("%Y%m%dT%H%M%S")
        extension = variation.mime_type.split("/")[-1] or "png"
        filename = f"batch-{job_id[:8]}-{item_index:04d}-{timestamp}.{extension}"

        upload = self.uploader.upload_image(
            variation.image_data,
            filename,
            mime_type=variation.mime_type,
            tags=BATCH_TAGS,
        )

        attrs = source_attributes or {}
        target = variation.metadata.get("target") or {}
        image = CatalogImage(
            filename=filename,
            public_url=upload.secure_url,
            storage_path=f"cloudinary:{upload.public_id}",
            mime_type=variation.mime_type,
            file_size=upload.bytes or len(variation.image_data),
            prompt_text=variation.prompt,
            description=f"Batch generated variation: {variation.metadata.get('display_name', target.get('kind'))}",
            tags=list(BATCH_TAGS),
            # Attributes the variation changed override the source image's
            breed_id=target.get("breed_id") or attrs.get("breed_id"),
            coat_id=target.get("coat_id") or attrs.get("coat_id"),
            outfit_id=target.get("outfit_id"),
            format_id=target.get("format_id") or attrs.get("format_id"),
            theme_id=attrs.get("theme_id"),
            style_id=attrs.get("style_id"),
            cloudinary_public_id=upload.public_id,
            cloudinary_version=upload.version,
            batch_job_id=job_id,
        )
        try:
            with Session(self.engine) as session:
                session.add(image)
                session.commit()
                session.refresh(image)
        except Exception as exc:
            raise ArtifactUploadError(f"Catalog registration failed: {exc}") from exc

        logger.info("Registered catalog image %s for job %s item %d", image.id, job_id, item_index)
        return ArtifactRef(id=image.id, url=image.public_url)
