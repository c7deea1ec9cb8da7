# =============================================================================
# Celery Task Definitions — Knowledge-File Ingestion
# =============================================================================
#
# INGESTION PIPELINE (ingest_knowledge_file):
#   1. Mark the KnowledgeUpload PROCESSING
#   2. Extract text by file type (parser.py: Docling for PDF, pandas for
#      CSV/Excel, plain read for text/markdown/JSON)
#   3. Chunk, embed and store via add_to_knowledge_base()
#   4. Mark COMPLETED with the entry count (or FAILED with the error)
#
# Celery workers are SYNCHRONOUS: no async/await here, and the sync
# SQLAlchemy engine only.
#
# RETRY STRATEGY:
# max_retries=3, 60s apart, for transient failures (embedding API rate
# limits, DB connection drops). A missing or unsupported file fails
# immediately; retrying cannot fix it.
# =============================================================================

import logging

from sqlalchemy import update

from payrollpro.config import settings
from payrollpro.db.engine import get_sync_session
from payrollpro.db.models import KnowledgeUpload, UploadStatus
from payrollpro.services.knowledge import add_to_knowledge_base
from payrollpro.services.parser import UnsupportedFileType, extract_text
from payrollpro.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def _update_upload(
    upload_id: int,
    status: UploadStatus,
    error_message: str | None = None,
    entry_count: int | None = None,
) -> None:
    """Commit an upload status change in its own session."""
    with get_sync_session() as session:
        values: dict = {"status": status}
        if error_message is not None:
            values["error_message"] = error_message
        if entry_count is not None:
            values["entry_count"] = entry_count

        session.execute(
            update(KnowledgeUpload)
            .where(KnowledgeUpload.id == upload_id)
            .values(**values)
        )


@celery_app.task(
    bind=True,
    name="ingest_knowledge_file",
    max_retries=3,
    default_retry_delay=60,
)
def ingest_knowledge_file(
    self,
    upload_id: int,
    file_path: str,
    original_name: str,
    category: str,
) -> dict:
    """
    Extract, chunk, embed and store one uploaded knowledge file.

    Args:
        self: Bound task (provides self.request.id).
        upload_id: KnowledgeUpload row to update.
        file_path: Saved upload on disk.
        original_name: Name the user uploaded; decides the parser.
        category: Knowledge category for every entry.

    Returns:
        dict with the upload id, entry count and store type.
    """
    task_id = self.request.id
    logger.info(
        "Starting knowledge ingestion: upload_id=%d, file=%s, category=%s, "
        "task_id=%s, store=%s",
        upload_id, original_name, category, task_id, settings.vectorstore_type,
    )

    try:
        _update_upload(upload_id, UploadStatus.PROCESSING)

        logger.info("[%s] Step 1/2: Extracting text...", task_id)
        extracted = extract_text(file_path, original_name)
        if not extracted.text:
            raise UnsupportedFileType(f"No text could be extracted from {original_name}")

        logger.info(
            "[%s] Step 2/2: Chunking, embedding and storing %d chars...",
            task_id, len(extracted.text),
        )
        entry_ids = add_to_knowledge_base(
            extracted.text,
            category=category,
            metadata={
                "filename": extracted.filename,
                "file_type": extracted.file_type,
                "upload_id": upload_id,
            },
            source=extracted.filename,
        )

        _update_upload(upload_id, UploadStatus.COMPLETED, entry_count=len(entry_ids))

        summary = {
            "upload_id": upload_id,
            "status": "completed",
            "entry_count": len(entry_ids),
            "vectorstore": settings.vectorstore_type,
        }
        logger.info("[%s] Knowledge ingestion complete: %s", task_id, summary)
        return summary

    except (FileNotFoundError, UnsupportedFileType) as exc:
        logger.error("[%s] Cannot ingest upload_id=%d: %s", task_id, upload_id, exc)
        _update_upload(upload_id, UploadStatus.FAILED, error_message=str(exc)[:1000])
        raise

    except Exception as exc:
        logger.exception(
            "[%s] Knowledge ingestion failed for upload_id=%d: %s",
            task_id, upload_id, exc,
        )
        _update_upload(upload_id, UploadStatus.FAILED, error_message=str(exc)[:1000])
        raise self.retry(exc=exc)
