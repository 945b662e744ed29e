import logging
import sys
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from lib.config import get_settings
from lib.error_handler import AppError, ErrorHandler, MethodNotAllowed

from .services.audio import normalize_headers
from .services.voice import VoiceService

settings = get_settings()

# Configure detailed logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stdout,
    force=True  # Ensure our config takes precedence
)

# Create logger for this file
logger = logging.getLogger(__name__)


def create_app(voice_service: Optional[VoiceService] = None) -> FastAPI:
    """Build the ASGI app serving the three voice endpoints"""
    app = FastAPI(title="Voice capture")
    app.state.voice_service = voice_service or VoiceService(settings)

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        return JSONResponse(status_code=exc.status_code, content=ErrorHandler.handle_app_error(exc))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 405:
            error = MethodNotAllowed()
            return JSONResponse(status_code=error.status_code, content=ErrorHandler.handle_app_error(error))
        return JSONResponse(status_code=exc.status_code, content={'ok': False, 'error': str(exc.detail)})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        return JSONResponse(status_code=500, content=ErrorHandler.handle_unexpected_error(exc))

    @app.get('/api/health')
    async def health():
        """Basic health check"""
        return {'ok': True, 'status': 'healthy'}

    @app.post('/api/voice/quick')
    async def quick_capture(request: Request):
        logger.info("Quick capture received")
        service: VoiceService = request.app.state.voice_service
        return await service.handle_quick(normalize_headers(request.headers), request.stream())

    @app.post('/api/voice/long')
    async def long_summary(request: Request):
        logger.info("Long recording received")
        service: VoiceService = request.app.state.voice_service
        return await service.handle_long(normalize_headers(request.headers), request.stream())

    @app.post('/api/voice/complete')
    async def complete_task(request: Request):
        logger.info("Completion recording received")
        service: VoiceService = request.app.state.voice_service
        return await service.handle_complete(normalize_headers(request.headers), request.stream())

    return app


app = create_app()
