"""
Serves frozen remote images referenced by rendered message HTML.
"""

import logging

from fastapi import APIRouter, HTTPException
from fastapi.responses import Response

from app.services.asset_files import AssetNotFoundError, resolve_downloaded_asset

logger = logging.getLogger(__name__)

router = APIRouter()

CACHE_MAX_AGE_SECONDS = 365 * 24 * 60 * 60

# Frozen files are sender-controlled; opened directly (an SVG with <script>)
# they must not run anything on this origin.
ASSET_CONTENT_SECURITY_POLICY = "default-src 'none'; style-src 'unsafe-inline'; sandbox"


@router.get(
    "/assets/{message_id}/{filename}",
    responses={
        200: {"description": "Image bytes", "content": {"image/*": {}}},
        404: {"description": "Asset not found"},
    },
)
def get_asset(message_id: str, filename: str):
    """
    Return a downloaded image.

    Files are content-addressed, so responses may be cached publicly for a year.
    """
    try:
        asset = resolve_downloaded_asset(message_id, filename)
    except AssetNotFoundError:
        raise HTTPException(status_code=404, detail="Asset not found")
    except Exception as e:
        logger.error(f"Asset lookup failed for {message_id}/{filename}: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Asset lookup failed: {str(e)}")

    return Response(
        content=asset.content,
        media_type=asset.content_type,
        headers={
            "Cache-Control": f"public, max-age={CACHE_MAX_AGE_SECONDS}",
            "Content-Disposition": f'inline; filename="{asset.filename}"',
            "X-Content-Type-Options": "nosniff",
            "Content-Security-Policy": ASSET_CONTENT_SECURITY_POLICY,
        },
    )
