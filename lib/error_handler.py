import logging

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {'ok': False, 'error': self.message}


class InvalidPayload(AppError):
    status_code = 400


class UnsupportedMediaType(AppError):
    status_code = 400


class PayloadTooLarge(AppError):
    status_code = 413


class UploadTimeout(AppError):
    status_code = 408


class MethodNotAllowed(AppError):
    status_code = 405

    def __init__(self, message: str = "Method not allowed"):
        super().__init__(message)


class MissingConfiguration(AppError):
    status_code = 500


class UpstreamError(AppError):
    """Raised when a third-party API answers with a failure; the message carries its body"""
    status_code = 500


class SchemaValidationError(AppError):
    status_code = 500


class MissingField(AppError):
    status_code = 500


class ErrorHandler:
    @staticmethod
    def handle_app_error(error: AppError) -> dict:
        if error.status_code >= 500:
            logger.error(f"{type(error).__name__}: {error.message}")
        else:
            logger.warning(f"{type(error).__name__} ({error.status_code}): {error.message}")
        return error.to_payload()

    @staticmethod
    def handle_unexpected_error(error: Exception) -> dict:
        logger.error(f"Unexpected error: {str(error)}", exc_info=error)
        return {'ok': False, 'error': str(error) or "Unknown error"}
