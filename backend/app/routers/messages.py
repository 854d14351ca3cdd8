"""
Message HTML endpoints: safe rendering and remote asset freezing.
"""

import logging

from fastapi import APIRouter, HTTPException

from app.models.asset import AssetFreezeResponse
from app.models.message_html import HtmlRenderResponse
from app.services.asset_freeze import freeze_message_assets
from app.services.html_render import MessageNotFoundError, render_message_html

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/{message_id}/render",
    response_model=HtmlRenderResponse,
    responses={
        200: {
            "description": "Display-safe HTML of the message",
            "content": {
                "application/json": {
                    "example": {
                        "html": '<p>Hello <a href="/go?url=https%3A%2F%2Fexample.com">there</a></p>',
                    }
                }
            },
        },
        404: {"description": "Message not found"},
    },
)
def render_message(message_id: str):
    """
    Return the sanitized HTML of a message.

    The first call computes and caches the result; later calls return the
    cached HTML until an asset freeze invalidates it.
    """
    try:
        return HtmlRenderResponse(html=render_message_html(message_id))
    except MessageNotFoundError:
        raise HTTPException(status_code=404, detail="Message not found")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Render failed for message {message_id}: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Render failed: {str(e)}")


@router.post(
    "/{message_id}/freeze-assets",
    response_model=AssetFreezeResponse,
    responses={
        200: {
            "description": "Counts of the freeze run",
            "content": {
                "application/json": {
                    "example": {
                        "total_found": 4,
                        "downloaded": 2,
                        "failed": 1,
                        "skipped": 1,
                        "failures": [
                            {"host": "cdn.example.com", "reason": "http status 500", "count": 1}
                        ],
                    }
                }
            },
        },
        404: {"description": "Message not found"},
    },
)
def freeze_assets(message_id: str):
    """
    Download the remote images of a message so they render without network access.

    Individual URLs that are blocked, oversized or unreachable are reported in
    the counts; they never fail the request.
    """
    try:
        return freeze_message_assets(message_id)
    except MessageNotFoundError:
        raise HTTPException(status_code=404, detail="Message not found")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Asset freeze failed for message {message_id}: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Asset freeze failed: {str(e)}")
