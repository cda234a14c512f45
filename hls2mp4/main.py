"""HLS Download API - FastAPI Application."""

import logging

from fastapi import FastAPI, Request, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from hls2mp4.config import settings
from hls2mp4.errors import http_error_handler
from hls2mp4.routers import download

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

CORS_HEADERS = {
    "Access-Control-Allow-Credentials": "true",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,OPTIONS,POST",
    "Access-Control-Allow-Headers": (
        "X-CSRF-Token, X-Requested-With, Accept, Accept-Version, Content-Length, "
        "Content-MD5, Content-Type, Date, X-Api-Version"
    ),
}


# Create app
app = FastAPI(
    title=settings.app_name,
    description="Download HLS (.m3u8) streams as a single MP4 file",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    debug=settings.debug,
)

app.add_exception_handler(StarletteHTTPException, http_error_handler)


@app.middleware("http")
async def cors(request: Request, call_next):
    """Answer preflights and put the CORS headers on every response."""
    if request.method == "OPTIONS":
        response = Response(status_code=200)
    else:
        response = await call_next(request)
    response.headers.update(CORS_HEADERS)
    return response


# Include routers
app.include_router(download.router)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": settings.app_name,
        "version": "0.1.0",
        "description": "Download HLS streams as MP4",
        "docs": "/docs",
        "endpoints": {
            "download": "/download?url=<m3u8 url> (GET) or {\"url\": ...} (POST) - stream the video as MP4",
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
