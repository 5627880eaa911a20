from token_aggregator.api.routes.health import router as health_router
from token_aggregator.api.routes.tokens import router as tokens_router
from token_aggregator.api.routes.ws import router as ws_router

__all__ = ["health_router", "tokens_router", "ws_router"]
