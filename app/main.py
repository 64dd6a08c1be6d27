# app/main.py
from fastapi import FastAPI
from app.core.config import settings
from app.api.endpoints import services, budget
from app.x402.chains import get_default_chain_key, get_network_mode, list_accepted_chains
from app.x402.middleware import X402Middleware
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json" # Standard location for OpenAPI spec
)

# Payment gate for the operations listed in app.x402.middleware.PROTECTED_ENDPOINTS
app.add_middleware(X402Middleware)

# The prefix ensures all routes start with /api/v1
app.include_router(services.router, prefix=settings.API_V1_STR, tags=["services"])
app.include_router(budget.router, prefix=settings.API_V1_STR, tags=["budget"])


@app.get("/health", summary="Health Check", tags=["default"])
def health():
    """ Liveness endpoint, also lists the networks payments are accepted on. """
    return {
        "status": "ok",
        "network": get_network_mode(),
        "default_chain": get_default_chain_key(),
        "networks": [chain.summary() for chain in list_accepted_chains()],
    }


@app.get("/", summary="Welcome", tags=["default"])
def read_root():
    logger.info("Root endpoint '/' accessed.")
    return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}"}
