from .play import play_router
from .proxy import proxy_router

__all__ = ["play_router", "proxy_router"]
