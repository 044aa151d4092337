from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

from fastapi import status


class ErrorCode(str, Enum):
    surface_unavailable = "surface_unavailable"
    session_load_failed = "session_load_failed"
    session_not_ready = "session_not_ready"
    missing_output = "missing_output"
    invalid_channel_index = "invalid_channel_index"
    invalid_image = "invalid_image"
    unsupported_media_type = "unsupported_media_type"
    bad_dimensions = "bad_dimensions"
    too_large = "too_large"
    layer_not_found = "layer_not_found"
    timeout = "timeout"
    internal_error = "internal_error"
    unauthorized = "unauthorized"
    malformed_multipart = "malformed_multipart"


_DEFAULT_MESSAGE: Final[dict[ErrorCode, str]] = {
    ErrorCode.surface_unavailable: "Drawing surface could not be rasterized.",
    ErrorCode.session_load_failed: "Model could not be loaded.",
    ErrorCode.session_not_ready: "Model not loaded.",
    ErrorCode.missing_output: "Model result is missing the logits output.",
    ErrorCode.invalid_channel_index: "Channel index out of range.",
    ErrorCode.invalid_image: "Failed to decode image.",
    ErrorCode.unsupported_media_type: "Unsupported media type.",
    ErrorCode.bad_dimensions: "Image dimensions exceed allowed limits.",
    ErrorCode.too_large: "File exceeds size limit.",
    ErrorCode.layer_not_found: "Activation layer not produced by the model.",
    ErrorCode.timeout: "Request timed out.",
    ErrorCode.internal_error: "Internal server error.",
    ErrorCode.unauthorized: "Unauthorized.",
    ErrorCode.malformed_multipart: "Malformed multipart body.",
}


@dataclass(frozen=True)
class ErrorResponse:
    code: ErrorCode
    message: str
    request_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "code": self.code.value,
            "message": self.message,
            "request_id": self.request_id,
        }


class AppError(Exception):
    def __init__(self, code: ErrorCode, http_status: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status
        self.message = message


def app_error(code: ErrorCode, message: str | None = None) -> AppError:
    """Build an AppError whose status follows `status_for(code)`."""
    msg = message if message is not None else _DEFAULT_MESSAGE.get(code, "")
    return AppError(code, status_for(code), msg)


def new_error(code: ErrorCode, request_id: str, message: str | None = None) -> ErrorResponse:
    msg = message if message is not None else _DEFAULT_MESSAGE.get(code, "")
    return ErrorResponse(code=code, message=msg, request_id=request_id)


_STATUS: Final[dict[ErrorCode, int]] = {
    ErrorCode.surface_unavailable: status.HTTP_400_BAD_REQUEST,
    ErrorCode.invalid_image: status.HTTP_400_BAD_REQUEST,
    ErrorCode.bad_dimensions: status.HTTP_400_BAD_REQUEST,
    ErrorCode.invalid_channel_index: status.HTTP_400_BAD_REQUEST,
    ErrorCode.malformed_multipart: status.HTTP_400_BAD_REQUEST,
    ErrorCode.unauthorized: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.layer_not_found: status.HTTP_404_NOT_FOUND,
    ErrorCode.too_large: status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    ErrorCode.unsupported_media_type: status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
    ErrorCode.session_load_failed: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.session_not_ready: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.timeout: status.HTTP_504_GATEWAY_TIMEOUT,
}


def status_for(code: ErrorCode) -> int:
    # missing_output and internal_error fall through to 500
    return _STATUS.get(code, status.HTTP_500_INTERNAL_SERVER_ERROR)
