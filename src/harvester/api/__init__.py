from .health import router as health_router
from .view import router as view_router
from .ws import router as ws_router

# Harvest server: health_router, ws_router (/ and /ws/surface/{captcha_id})
# View server: view_router (captcha page on every path)
