import pytest

from upload_server.app.services.errors import (
    EmptyUpload,
    IdentifierCollision,
    InvalidOptions,
    MalformedUpload,
    NotFound,
    PayloadTooLarge,
    StorageFailure,
    ThumbnailFailure,
    Unauthorized,
    error_response,
)


@pytest.mark.parametrize("error, status_code, reason", [
    (EmptyUpload(), 400, "empty_upload"),
    (InvalidOptions(), 400, "invalid_options"),
    (PayloadTooLarge(), 413, "payload_too_large"),
    (StorageFailure("disk on fire"), 500, "storage_failure"),
    (IdentifierCollision(), 500, "storage_failure"),
    (NotFound(), 404, "not_found"),
    (Unauthorized(), 403, "invalid_delete_token"),
    (ThumbnailFailure(), 500, "thumbnail_failure"),
    (RuntimeError("boom"), 500, "internal_error"),
])
def test_error_response(error, status_code, reason):
    assert error_response(error) == (status_code, {"error": reason})


def test_collision_is_a_storage_failure():
    assert isinstance(IdentifierCollision(), StorageFailure)


def test_malformed_upload_is_a_client_error():
    status_code, body = error_response(MalformedUpload())
    assert status_code == 400
    assert set(body) == {"error"}
