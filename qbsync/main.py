"""Main FastAPI application."""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from qbsync.config import settings
from qbsync.quickbooks import routes as quickbooks_routes

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

# Create FastAPI app
app = FastAPI(
    title="qbsync API",
    description="One-way push sync of expenses and invoices to QuickBooks Online",
    version="0.1.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(quickbooks_routes.router, prefix=f"{settings.API_V1_PREFIX}/quickbooks", tags=["QuickBooks"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "qbsync API",
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "qbsync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
