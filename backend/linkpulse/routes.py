from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from .database import get_db
from .handler import LinkNotFoundError, redirect_handler
from .schemas import LinkPreviewResponse, ErrorResponse
from .logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.get(
    "/preview/{code}",
    response_model=LinkPreviewResponse,
    responses={404: {"model": ErrorResponse}}
)
async def preview_link(
    code: str,
    db: Session = Depends(get_db)
):
    """Show where a short code points without recording a click."""
    try:
        return redirect_handler.preview(db, code)
    except LinkNotFoundError:
        raise HTTPException(status_code=404, detail="Link not found")
