"""Main application file for the Ask the Stars billing backend."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from config import (
    APP_TITLE, APP_VERSION, CORS_ORIGINS, CORS_CREDENTIALS,
    CORS_METHODS, CORS_HEADERS, ENTITLEMENT_STORE_BACKEND, get_logger
)
from auth import initialize_firebase
from dependencies import build_billing_services
from routes import router

# Initialize logging
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build clients at startup; they live as long as the process."""
    db = initialize_firebase() if ENTITLEMENT_STORE_BACKEND != "memory" else None
    app.state.billing = build_billing_services(db)
    logger.info("Billing services initialized")
    yield
    app.state.billing = None


# Create FastAPI app
app = FastAPI(title=APP_TITLE, version=APP_VERSION, lifespan=lifespan)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=CORS_CREDENTIALS,
    allow_methods=CORS_METHODS,
    allow_headers=CORS_HEADERS,
)

app.add_middleware(GZipMiddleware, minimum_size=500)

# Include routes
app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
