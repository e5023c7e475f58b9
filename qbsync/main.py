from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
from typing import List
import logging
import os

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Load environment variables from .env file
load_dotenv()
logger.info("Environment variables loaded")

from qbsync.core.database import engine, Base, register_models
from qbsync.api import quickbooks as quickbooks_router

register_models()
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="QuickBooks Sync & Reconciliation",
    description="Syncs QuickBooks Online data into a local store and reconciles invoice amounts",
    version="1.0.0"
)


def _build_allowed_origins() -> List[str]:
    """
    Build the list of allowed origins for CORS.
    Ensures localhost/127.0.0.1 variants are always present in development.
    """
    raw = os.getenv(
        "ALLOWED_ORIGINS",
        "http://localhost:3000,http://127.0.0.1:3000",
    )
    configured = {origin.strip() for origin in raw.split(",") if origin.strip()}

    if os.getenv("ENVIRONMENT", "development") == "development":
        configured.update({"http://localhost:3000", "http://127.0.0.1:3000"})

    return sorted(configured)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_build_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(quickbooks_router.router, tags=["quickbooks"])

@app.get("/api/health")
def health_check():
    return {"status": "ok"}
