"""Captcha page served to the human solving the challenge.

Every GET path returns the same page so it can be loaded under a proxied
pageUrl. Captcha windows use this server as their HTTP proxy, so requests
arrive for arbitrary hosts and paths. The page reads sitekey, captchaId and
autoClick from its own query.
"""

import logging
from functools import lru_cache
from pathlib import Path

from fastapi import APIRouter
from fastapi.responses import HTMLResponse

from ..core.config import settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["view"])

TEMPLATE_PATH = Path(__file__).resolve().parent.parent / "templates" / "captcha.html"


@lru_cache
def render_captcha_page(surface_ws_url: str) -> str:
    template = TEMPLATE_PATH.read_text(encoding="utf-8")
    return template.replace("{{SURFACE_WS_URL}}", surface_ws_url)


@router.get("/", response_class=HTMLResponse)
@router.get("/{path:path}", response_class=HTMLResponse)
async def captcha_page(path: str = "") -> HTMLResponse:
    return HTMLResponse(content=render_captcha_page(settings.SURFACE_WS_URL))
