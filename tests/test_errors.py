from __future__ import annotations

from digitscope.errors import AppError, ErrorCode, app_error, new_error, status_for


def test_status_mapping() -> None:
    assert status_for(ErrorCode.session_not_ready) == 503
    assert status_for(ErrorCode.session_load_failed) == 503
    assert status_for(ErrorCode.layer_not_found) == 404
    assert status_for(ErrorCode.invalid_channel_index) == 400
    assert status_for(ErrorCode.surface_unavailable) == 400
    assert status_for(ErrorCode.unsupported_media_type) == 415
    assert status_for(ErrorCode.too_large) == 413
    assert status_for(ErrorCode.timeout) == 504
    assert status_for(ErrorCode.unauthorized) == 401
    assert status_for(ErrorCode.missing_output) == 500
    assert status_for(ErrorCode.internal_error) == 500


def test_app_error_defaults_and_override() -> None:
    e = app_error(ErrorCode.session_not_ready)
    assert isinstance(e, AppError)
    assert e.http_status == 503 and e.message == "Model not loaded."
    assert str(e) == "Model not loaded."
    e2 = app_error(ErrorCode.layer_not_found, "Layer 'x' not in model outputs")
    assert e2.http_status == 404 and e2.message.startswith("Layer 'x'")


def test_error_response_body() -> None:
    body = new_error(ErrorCode.invalid_image, "rid-1").to_dict()
    assert body == {
        "code": "invalid_image",
        "message": "Failed to decode image.",
        "request_id": "rid-1",
    }
