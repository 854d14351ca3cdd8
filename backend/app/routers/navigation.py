"""
Outbound link redirect used by rendered message HTML.
"""

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import RedirectResponse

from app.services.safe_navigation import safe_redirect_target

router = APIRouter()


@router.get(
    "/go",
    status_code=302,
    responses={
        302: {"description": "Redirect to the http(s) target without a Referer"},
        400: {"description": "Missing or non-http(s) url"},
    },
)
def go(url: str = Query("")):
    """Redirect to an external link while hiding the mail vault URL from the target site."""
    try:
        target = safe_redirect_target(url)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return RedirectResponse(
        url=target,
        status_code=302,
        headers={"Referrer-Policy": "no-referrer"},
    )
