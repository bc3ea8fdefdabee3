"""Serves stored PDFs at the public file URLs the storage layer hands out."""

import logging
import posixpath

from fastapi import APIRouter, HTTPException, Response, status

from app.core.exceptions import StoredFileNotFoundError
from app.deps import CurrentUser
from app.services.storage import DOCUMENTS_DIR, storage_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{file_path:path}")
async def serve_file(file_path: str, user: CurrentUser) -> Response:
    """Return a file under ``documents/<tenant>/``, only to that tenant's users."""
    normalized = posixpath.normpath(file_path)
    parts = normalized.split("/")
    if len(parts) < 3 or parts[0] != DOCUMENTS_DIR:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid file path")
    if parts[1] != str(user.tenant_id):
        logger.warning("User %s denied file of another tenant: %s", user.id, normalized)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")

    try:
        content = await storage_service.read(normalized)
    except StoredFileNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid file path")

    return Response(
        content=content,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'inline; filename="{parts[-1]}"',
            "Cache-Control": "private, max-age=3600",
        },
    )
